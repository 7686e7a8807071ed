from __future__ import annotations

import argparse
import logging
from datetime import timezone
from typing import Optional, Protocol, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from changerelay.config import ConfigurationError, Settings, load_settings, validate_settings
from changerelay.database import ensure_bookkeeping_schema
from changerelay.schemas import AgentType
from changerelay.services import (
    ErrorLogHandler,
    MasterAgent,
    MasterMaintenance,
    Notifier,
    RelayMaintenance,
    ShardCoordinator,
    SlaveAgent,
    SlaveMaintenance,
)
from changerelay.store import open_store

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


class Agent(Protocol):
    def run(self): ...


def build_agent(settings: Settings) -> Agent:
    agent_type = settings.agent_type
    timeout = settings.query_timeout

    def store(url: Optional[str], name: Optional[str] = None):
        return open_store(url, name=name, query_timeout=timeout)

    if agent_type is AgentType.MASTER:
        return MasterAgent(
            settings,
            store(settings.master_db_url, "master"),
            store(settings.master_ct_db_url, "master_ct"),
            store(settings.relay_db_url, "relay"),
        )
    if agent_type is AgentType.SLAVE:
        return SlaveAgent(
            settings,
            store(settings.relay_db_url, "relay"),
            store(settings.slave_db_url, "slave"),
            store(settings.slave_ct_db_url, "slave_ct"),
        )
    if agent_type is AgentType.SHARD_COORDINATOR:
        shards = {name: store(url, name) for name, url in settings.shard_database_urls.items()}
        return ShardCoordinator(settings, store(settings.relay_db_url, "relay"), shards)
    if agent_type is AgentType.NOTIFIER:
        return Notifier(settings, store(settings.resolved_error_log_db_url, "error_log"))
    if agent_type is AgentType.MASTER_MAINTENANCE:
        return MasterMaintenance(settings, store(settings.master_ct_db_url, "master_ct"), store(settings.relay_db_url, "relay"))
    if agent_type is AgentType.RELAY_MAINTENANCE:
        return RelayMaintenance(settings, store(settings.relay_db_url, "relay"))
    if agent_type is AgentType.SLAVE_MAINTENANCE:
        return SlaveMaintenance(settings, store(settings.relay_db_url, "relay"), store(settings.slave_ct_db_url, "slave_ct"))
    raise ConfigurationError(f"Unsupported agent type {agent_type!r}")


def bookkeeping_urls(settings: Settings) -> list[str]:
    """Databases holding bookkeeping tables for the configured agent, without duplicates."""

    agent_type = settings.agent_type
    urls: list[Optional[str]] = [settings.relay_db_url, settings.resolved_error_log_db_url]
    if agent_type is AgentType.MASTER:
        urls.append(settings.master_db_url)
    if agent_type is AgentType.SHARD_COORDINATOR:
        urls.extend(settings.shard_database_urls.values())
    seen: list[str] = []
    for url in urls:
        if url and url not in seen:
            seen.append(url)
    return seen


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO)
    logging.basicConfig(format=LOG_FORMAT)
    package_logger = logging.getLogger("changerelay")
    package_logger.setLevel(level)

    url = settings.resolved_error_log_db_url
    if url and not any(isinstance(handler, ErrorLogHandler) for handler in package_logger.handlers):
        agent_type = settings.agent_type.value if settings.agent_type else None
        package_logger.addHandler(ErrorLogHandler(open_store(url, name="error_log"), agent_type))


def _build_trigger(expression: str, tz_name: str | None) -> CronTrigger:
    tz = timezone.utc
    if tz_name:
        try:
            tz = ZoneInfo(tz_name)
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone '%s' for the agent schedule; defaulting to UTC", tz_name)
    return CronTrigger.from_crontab(expression, timezone=tz)


def _run_once(agent: Agent) -> None:
    try:
        agent.run()
    except Exception:  # noqa: B902
        logger.exception("Agent run failed, waiting for the next scheduled run")


def run_scheduled(settings: Settings, agent: Agent, scheduler: Optional[BlockingScheduler] = None) -> BlockingScheduler:
    if not settings.schedule_cron:
        raise ConfigurationError("--schedule requires schedule_cron to be set")
    scheduler = scheduler or BlockingScheduler()
    scheduler.add_job(
        _run_once,
        trigger=_build_trigger(settings.schedule_cron, settings.schedule_timezone),
        args=[agent],
        id=f"changerelay-{settings.agent_type.value}",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("Scheduling %s agent with '%s' (%s)", settings.agent_type.value, settings.schedule_cron, settings.schedule_timezone)
    scheduler.start()
    return scheduler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="changerelay", description="Run one change-tracking replication agent.")
    parser.add_argument("-c", "--config", help="Path to a YAML configuration file")
    parser.add_argument("-l", "--log-level", help="Logging level override (e.g. DEBUG, INFO)")
    parser.add_argument("--validate", action="store_true", help="Validate the configuration and exit")
    parser.add_argument("--init-db", action="store_true", help="Create or upgrade bookkeeping tables before running")
    parser.add_argument("--schedule", action="store_true", help="Run the agent repeatedly on schedule_cron")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(format=LOG_FORMAT)
    try:
        settings = load_settings(args.config, log_level=args.log_level)
        validate_settings(settings)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    if args.validate:
        print(f"Configuration for the {settings.agent_type.value} agent is valid")
        return 0

    try:
        if args.init_db:
            for url in bookkeeping_urls(settings):
                ensure_bookkeeping_schema(url)
        configure_logging(settings)
        agent = build_agent(settings)
        if args.schedule:
            run_scheduled(settings, agent)
        else:
            agent.run()
    except Exception:  # noqa: B902
        logger.exception("%s agent failed", settings.agent_type.value)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
