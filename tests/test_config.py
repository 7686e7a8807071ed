from __future__ import annotations

from datetime import time
from pathlib import Path

import pytest

from changerelay.config import ConfigurationError, Settings, load_settings, validate_settings
from changerelay.schemas import AgentType, TableConf

SLAVE_CONFIG = """
agent_type: slave
relay_db_url: sqlite:///relay.db
slave_db_url: sqlite:///slave.db
slave_ct_db_url: sqlite:///slave_ct.db
slave_identifier: reporting
threshold_ignore_start_time: 23:45
threshold_ignore_end_time: "01:15"
tables:
  - name: Orders
    stop_on_error: true
    column_modifiers:
      - column_name: Notes
        length: 20
  - name: Customers
    column_list: [CustomerId, Name]
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "changerelay.yml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_settings_from_yaml(tmp_path: Path) -> None:
    settings = load_settings(_write(tmp_path, SLAVE_CONFIG))

    assert settings.agent_type is AgentType.SLAVE
    assert settings.threshold_ignore_start_time == time(23, 45)
    assert settings.threshold_ignore_end_time == time(1, 15)
    assert [table.name for table in settings.tables] == ["Orders", "Customers"]
    assert settings.tables[0].modifier_for("notes").length == 20
    assert settings.tables[1].allows_column("name")
    assert not settings.tables[1].allows_column("Email")
    validate_settings(settings)


def test_overrides_take_precedence_over_file(tmp_path: Path) -> None:
    settings = load_settings(_write(tmp_path, SLAVE_CONFIG), log_level="DEBUG", slave_identifier=None)

    assert settings.log_level == "DEBUG"
    assert settings.slave_identifier == "reporting"


@pytest.mark.parametrize(
    "text",
    [
        "agent_type: [unclosed",
        "- just\n- a list\n",
        "agent_type: janitor\n",
    ],
)
def test_load_settings_rejects_bad_files(tmp_path: Path, text: str) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(_write(tmp_path, text))


def test_missing_file_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Unable to read"):
        load_settings(tmp_path / "missing.yml")


@pytest.mark.parametrize(
    ("values", "message"),
    [
        ({}, "agent_type must be set"),
        ({"agent_type": "master", "relay_db_url": "sqlite://"}, "master_db_url, master_ct_db_url"),
        (
            {"agent_type": "slave", "relay_db_url": "sqlite://", "slave_db_url": "sqlite://", "slave_ct_db_url": "sqlite://"},
            "slave_identifier",
        ),
        (
            {"agent_type": "shard_coordinator", "relay_db_url": "sqlite://", "tables": [{"name": "Orders"}]},
            "at least one shard",
        ),
        (
            {
                "agent_type": "shard_coordinator",
                "relay_db_url": "sqlite://",
                "shard_database_urls": {"east": "sqlite://"},
                "master_shard": "west",
                "tables": [{"name": "Orders"}],
            },
            "master_shard 'west'",
        ),
        ({"agent_type": "notifier", "relay_db_url": "sqlite://"}, "email_server"),
        ({"agent_type": "relay_maintenance", "relay_db_url": "sqlite://"}, "change_retention_hours"),
        (
            {
                "agent_type": "master",
                "master_db_url": "sqlite://",
                "master_ct_db_url": "sqlite://",
                "relay_db_url": "sqlite://",
            },
            "at least one configured table",
        ),
    ],
)
def test_validate_settings_errors(values, message) -> None:
    with pytest.raises(ConfigurationError, match=message):
        validate_settings(Settings(**values))


def test_master_shard_defaults_to_first_shard() -> None:
    settings = Settings(shard_database_urls={"east": "sqlite://", "west": "sqlite://"})

    assert settings.resolved_master_shard == "east"


def test_error_log_defaults_to_relay() -> None:
    assert Settings(relay_db_url="sqlite:///relay.db").resolved_error_log_db_url == "sqlite:///relay.db"


@pytest.mark.parametrize("name", ["Orders; DROP TABLE x", "1Orders", "dbo.Orders", ""])
def test_table_names_must_be_identifiers(name: str) -> None:
    with pytest.raises(ValueError):
        TableConf(name=name)


def test_column_can_have_only_one_modifier() -> None:
    with pytest.raises(ValueError, match="multiple modifiers"):
        TableConf(
            name="Orders",
            column_modifiers=[{"column_name": "Notes", "length": 5}, {"column_name": "notes", "length": 8}],
        )
