from __future__ import annotations

from datetime import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from changerelay.schemas import AgentType, TableConf


class ConfigurationError(ValueError):
    """Raised when required settings for the selected agent are missing or invalid."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    agent_type: Optional[AgentType] = Field(
        default=None,
        description="Which agent this process runs (master, slave, shard_coordinator, notifier or a maintenance agent).",
    )
    log_level: str = Field(
        default="INFO",
        description="Python logging verbosity for changerelay modules (e.g. INFO, DEBUG).",
    )
    master_db_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the master database holding the tracked source tables.",
    )
    master_ct_db_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the master-side database that receives per-batch change tables.",
    )
    relay_db_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the relay database shared by masters and slaves.",
    )
    slave_db_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the slave database that receives the replicated rows.",
    )
    slave_ct_db_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the slave-side database holding downloaded change tables.",
    )
    error_log_db_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the database holding tblCTError. Defaults to the relay database.",
    )
    slave_identifier: Optional[str] = Field(
        default=None,
        description="Name identifying this slave in tblCTSlaveVersion and consolidated change tables.",
    )
    sharding: bool = Field(
        default=False,
        description="When true this master feeds a shard coordinator and never opens batches itself.",
    )
    shard_database_urls: Dict[str, str] = Field(
        default_factory=dict,
        description="Shard name to relay URL mapping used by the shard coordinator.",
    )
    master_shard: Optional[str] = Field(
        default=None,
        description="Shard whose schema changes are published for the unified batch.",
    )
    max_batch_size: Optional[int] = Field(
        default=None,
        ge=0,
        description="Largest change tracking version span captured in one batch. Unset or 0 disables the cap.",
    )
    threshold_ignore_start_time: Optional[time] = Field(
        default=None,
        description="Start of the daily window during which max_batch_size is ignored.",
    )
    threshold_ignore_end_time: Optional[time] = Field(
        default=None,
        description="End of the daily window during which max_batch_size is ignored.",
    )
    batch_consolidation_threshold: int = Field(
        default=0,
        ge=0,
        description="Pending batch count at which a slave consolidates batches. 0 disables consolidation.",
    )
    max_threads: Optional[int] = Field(
        default=None,
        ge=1,
        description="Upper bound on per-table worker threads. Unset runs one worker per table.",
    )
    data_copy_timeout: int = Field(
        default=36000,
        ge=1,
        description="Seconds allowed for copying one table between databases.",
    )
    query_timeout: int = Field(
        default=12000,
        ge=1,
        description="Seconds allowed for a single apply or merge transaction.",
    )
    change_retention_hours: Optional[int] = Field(
        default=None,
        description="Hours of change tables kept by the maintenance agents.",
    )
    email_server: Optional[str] = Field(default=None, description="SMTP host used by the notifier.")
    email_port: int = Field(default=25, description="SMTP port used by the notifier.")
    email_from_address: Optional[str] = Field(default=None, description="Sender address for error emails.")
    email_error_recipient: Optional[str] = Field(default=None, description="Recipient of error emails.")
    archive_suffix: str = Field(
        default="Archive",
        description="Table name suffix marking an archive table applied together with its base table.",
    )
    schedule_cron: Optional[str] = Field(
        default=None,
        description="Crontab expression used by --schedule to run the agent repeatedly.",
    )
    schedule_timezone: str = Field(default="UTC", description="IANA time zone for schedule_cron.")
    tables: List[TableConf] = Field(default_factory=list)

    @field_validator("threshold_ignore_start_time", "threshold_ignore_end_time", mode="before")
    @classmethod
    def _coerce_sexagesimal(cls, value: Any) -> Any:
        # YAML 1.1 reads an unquoted 23:45 as the base-60 integer 1425.
        if isinstance(value, int) and not isinstance(value, bool):
            return time(value // 60 % 24, value % 60)
        return value

    @property
    def resolved_error_log_db_url(self) -> Optional[str]:
        return self.error_log_db_url or self.relay_db_url

    @property
    def resolved_master_shard(self) -> Optional[str]:
        if self.master_shard:
            return self.master_shard
        return next(iter(self.shard_database_urls), None)


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> Settings:
    """Build settings from the environment, a YAML file and explicit overrides, in that precedence order."""

    values: dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except OSError as exc:
            raise ConfigurationError(f"Unable to read configuration file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file {path} is not valid YAML: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping at the top level")
        values.update(loaded)

    values.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return Settings(**values)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


_REQUIRED_URLS: dict[AgentType, tuple[str, ...]] = {
    AgentType.MASTER: ("master_db_url", "master_ct_db_url", "relay_db_url"),
    AgentType.SLAVE: ("relay_db_url", "slave_db_url", "slave_ct_db_url"),
    AgentType.SHARD_COORDINATOR: ("relay_db_url",),
    AgentType.NOTIFIER: (),
    AgentType.MASTER_MAINTENANCE: ("master_ct_db_url", "relay_db_url"),
    AgentType.RELAY_MAINTENANCE: ("relay_db_url",),
    AgentType.SLAVE_MAINTENANCE: ("relay_db_url", "slave_ct_db_url"),
}

_MAINTENANCE_AGENTS = {
    AgentType.MASTER_MAINTENANCE,
    AgentType.RELAY_MAINTENANCE,
    AgentType.SLAVE_MAINTENANCE,
}


def validate_settings(settings: Settings) -> None:
    agent_type = settings.agent_type
    if agent_type is None:
        raise ConfigurationError("agent_type must be set")

    missing = [name for name in _REQUIRED_URLS[agent_type] if not getattr(settings, name)]
    if missing:
        raise ConfigurationError(f"{agent_type.value} agent requires {', '.join(missing)} to be set")

    if agent_type in (AgentType.SLAVE, AgentType.SLAVE_MAINTENANCE) and not settings.slave_identifier:
        raise ConfigurationError(f"{agent_type.value} agent requires slave_identifier to be set")

    if agent_type is AgentType.SHARD_COORDINATOR:
        if not settings.shard_database_urls:
            raise ConfigurationError("shard_coordinator agent requires at least one shard database URL")
        if settings.resolved_master_shard not in settings.shard_database_urls:
            raise ConfigurationError(
                f"master_shard {settings.master_shard!r} is not one of the configured shard databases"
            )

    if agent_type is AgentType.NOTIFIER:
        if not settings.resolved_error_log_db_url:
            raise ConfigurationError("notifier agent requires error_log_db_url or relay_db_url to be set")
        if not settings.email_server or not settings.email_error_recipient:
            raise ConfigurationError("notifier agent requires email_server and email_error_recipient to be set")

    if agent_type in _MAINTENANCE_AGENTS and (settings.change_retention_hours or 0) <= 0:
        raise ConfigurationError(f"{agent_type.value} agent requires change_retention_hours to be set and positive")

    if agent_type in (AgentType.MASTER, AgentType.SLAVE, AgentType.SHARD_COORDINATOR) and not settings.tables:
        raise ConfigurationError(f"{agent_type.value} agent requires at least one configured table")
