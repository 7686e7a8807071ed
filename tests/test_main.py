from __future__ import annotations

import logging
from datetime import timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from changerelay import main as cli
from changerelay.config import ConfigurationError
from changerelay.database import reset_engines
from changerelay.services import (
    ErrorLogHandler,
    MasterAgent,
    Notifier,
    RelayMaintenance,
    ShardCoordinator,
    SlaveAgent,
    SlaveMaintenance,
)
from changerelay.store import open_store


@pytest.fixture(autouse=True)
def _isolate_logging():
    package_logger = logging.getLogger("changerelay")
    handlers = list(package_logger.handlers)
    yield
    for handler in list(package_logger.handlers):
        if handler not in handlers:
            package_logger.removeHandler(handler)
    reset_engines()


def _write_config(tmp_path: Path, **values) -> Path:
    lines = [f"{key}: {value}" for key, value in values.items()]
    lines += ["tables:", "  - name: Orders"]
    path = tmp_path / "changerelay.yml"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_validate_reports_valid_configuration(tmp_path: Path, capsys) -> None:
    relay_url = f"sqlite:///{tmp_path / 'relay.db'}"
    path = _write_config(tmp_path, agent_type="relay_maintenance", relay_db_url=relay_url, change_retention_hours=24)

    assert cli.main(["-c", str(path), "--validate"]) == 0
    assert "relay_maintenance agent is valid" in capsys.readouterr().out


def test_invalid_configuration_exits_with_error(tmp_path: Path) -> None:
    path = _write_config(tmp_path, agent_type="slave")

    assert cli.main(["-c", str(path), "--validate"]) == 1


@pytest.mark.parametrize(
    ("values", "expected"),
    [
        (
            {"agent_type": "master", "master_db_url": "sqlite://", "master_ct_db_url": "sqlite://", "relay_db_url": "sqlite://"},
            MasterAgent,
        ),
        (
            {
                "agent_type": "slave",
                "relay_db_url": "sqlite://",
                "slave_db_url": "sqlite://",
                "slave_ct_db_url": "sqlite://",
                "slave_identifier": "reporting",
            },
            SlaveAgent,
        ),
        (
            {"agent_type": "shard_coordinator", "relay_db_url": "sqlite://", "shard_database_urls": {"east": "sqlite://"}},
            ShardCoordinator,
        ),
        ({"agent_type": "notifier", "relay_db_url": "sqlite://", "email_server": "smtp"}, Notifier),
        ({"agent_type": "relay_maintenance", "relay_db_url": "sqlite://"}, RelayMaintenance),
        ({"agent_type": "slave_maintenance", "relay_db_url": "sqlite://", "slave_ct_db_url": "sqlite://"}, SlaveMaintenance),
    ],
)
def test_build_agent_matches_agent_type(make_settings, values, expected) -> None:
    assert isinstance(cli.build_agent(make_settings(**values)), expected)


def test_build_agent_requires_agent_type(make_settings) -> None:
    with pytest.raises(ConfigurationError):
        cli.build_agent(make_settings())


def test_bookkeeping_urls_are_deduplicated(make_settings) -> None:
    settings = make_settings(
        agent_type="master",
        master_db_url="sqlite:///master.db",
        relay_db_url="sqlite:///relay.db",
        error_log_db_url="sqlite:///relay.db",
    )

    assert cli.bookkeeping_urls(settings) == ["sqlite:///relay.db", "sqlite:///master.db"]


def test_build_trigger_timezones() -> None:
    assert str(cli._build_trigger("*/5 * * * *", "Europe/Berlin").timezone) == "Europe/Berlin"
    assert cli._build_trigger("0 * * * *", "Not/AZone").timezone == timezone.utc


def test_run_scheduled_registers_single_job(make_settings) -> None:
    jobs = []
    scheduler = SimpleNamespace(add_job=lambda func, **kwargs: jobs.append((func, kwargs)), start=lambda: None)
    agent = SimpleNamespace(run=lambda: None)
    settings = make_settings(agent_type="relay_maintenance", schedule_cron="*/10 * * * *")

    cli.run_scheduled(settings, agent, scheduler=scheduler)

    ((func, kwargs),) = jobs
    assert func is cli._run_once
    assert kwargs["id"] == "changerelay-relay_maintenance"
    assert kwargs["max_instances"] == 1
    assert kwargs["args"] == [agent]


def test_run_scheduled_requires_cron(make_settings) -> None:
    with pytest.raises(ConfigurationError):
        cli.run_scheduled(make_settings(agent_type="relay_maintenance"), SimpleNamespace(run=lambda: None))


def test_run_once_survives_agent_failure() -> None:
    def _fail():
        raise RuntimeError("relay unavailable")

    cli._run_once(SimpleNamespace(run=_fail))


def test_failed_run_exits_with_error_and_records_it(tmp_path: Path, monkeypatch) -> None:
    relay_url = f"sqlite:///{tmp_path / 'relay.db'}"
    path = _write_config(tmp_path, agent_type="relay_maintenance", relay_db_url=relay_url, change_retention_hours=24)

    def _fail():
        raise RuntimeError("relay unavailable")

    monkeypatch.setattr(cli, "build_agent", lambda settings: SimpleNamespace(run=_fail))

    assert cli.main(["-c", str(path), "--init-db"]) == 1

    errors = open_store(relay_url).get_unsent_errors()
    assert len(errors) == 1
    assert "relay_maintenance agent failed" in errors[0].message
    assert errors[0].headers.startswith("relay_maintenance | changerelay.main | ")


def test_error_log_handler_records_headers(relay) -> None:
    handler = ErrorLogHandler(relay, "slave")
    record = logging.LogRecord(
        "changerelay.services.slave", logging.ERROR, __file__, 1, "apply failed for %s", ("Orders",), None
    )

    handler.emit(record)

    (error,) = relay.get_unsent_errors()
    assert error.message == "apply failed for Orders"
    assert error.headers.startswith("slave | changerelay.services.slave | ")
