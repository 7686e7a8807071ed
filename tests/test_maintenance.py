from __future__ import annotations

from datetime import datetime, timedelta

from changerelay.models import ChangeTrackingVersion
from changerelay.services.maintenance import MasterMaintenance, RelayMaintenance, SlaveMaintenance, chop_date
from changerelay.services.master import MasterAgent

NOW = datetime(2024, 3, 1, 12, 0)
OLD = NOW - timedelta(hours=48)
RECENT = NOW - timedelta(hours=1)


def _set_start_time(store, ctid, started_at) -> None:
    with store._session_factory() as session:
        session.get(ChangeTrackingVersion, ctid).sync_start_time = started_at
        session.commit()


def _complete(relay, ctid, slave_identifier, stopped_at) -> None:
    relay.create_slave_batch(relay.get_batch(ctid), slave_identifier)
    relay.mark_batches_complete([ctid], stopped_at, slave_identifier)


def test_chop_date_subtracts_retention(make_settings) -> None:
    assert chop_date(make_settings(change_retention_hours=24), NOW) == NOW - timedelta(hours=24)


def test_master_maintenance_drops_change_tables_of_old_batches(
    make_settings, master_ct, relay, create_change_table
) -> None:
    for _ in range(2):
        relay.create_batch(0, 0)
    _set_start_time(relay, 1, OLD)
    _set_start_time(relay, 2, RECENT)
    create_change_table(master_ct, "tblCTOrders_1")
    create_change_table(master_ct, "tblCTOrders_2")

    dropped = MasterMaintenance(make_settings(change_retention_hours=24), master_ct, relay, clock=lambda: NOW).run()

    assert dropped == ["tblCTOrders_1"]
    assert master_ct.table_exists("tblCTOrders_2")


def test_relay_maintenance_waits_for_every_slave(make_settings, relay, create_change_table) -> None:
    for _ in range(2):
        relay.create_batch(0, 0)
    _set_start_time(relay, 1, OLD)
    _set_start_time(relay, 2, RECENT)
    _complete(relay, 1, "slave1", OLD)
    _complete(relay, 1, "slave2", OLD)
    _complete(relay, 2, "slave1", OLD)
    _complete(relay, 2, "slave2", RECENT)
    create_change_table(relay, "tblCTOrders_1")
    create_change_table(relay, "tblCTOrders_2")
    relay.create_schema_change_table(1)

    dropped = RelayMaintenance(make_settings(change_retention_hours=24), relay, clock=lambda: NOW).run()

    assert sorted(dropped) == ["tblCTOrders_1", "tblCTSchemaChange_1"]
    assert relay.table_exists("tblCTOrders_2")
    assert relay.get_batch(1) is None
    assert relay.get_batch(2) is not None
    assert relay.get_batch(2, "slave1") is None
    assert relay.get_batch(2, "slave2") is not None


def test_slave_maintenance_uses_its_own_completion_times(make_settings, relay, slave_ct, create_change_table) -> None:
    for _ in range(2):
        relay.create_batch(0, 0)
    _complete(relay, 1, "slave1", OLD)
    _complete(relay, 2, "slave1", RECENT)
    _complete(relay, 2, "slave2", OLD)
    create_change_table(slave_ct, "tblCTOrders_1")
    create_change_table(slave_ct, "tblCTOrders_2")
    create_change_table(slave_ct, "tblCTOrders_History")

    settings = make_settings(change_retention_hours=24)
    dropped = SlaveMaintenance(settings, relay, slave_ct, clock=lambda: NOW).run()

    assert dropped == ["tblCTOrders_1"]
    assert slave_ct.table_exists("tblCTOrders_2")
    assert slave_ct.table_exists("tblCTOrders_History")


def test_relay_maintenance_keeps_the_newest_batch(
    make_settings, relay, master, master_ct, create_change_table, seed_published_batch
) -> None:
    ctid = seed_published_batch(relay, 0, 4)
    _set_start_time(relay, ctid, OLD)
    _complete(relay, ctid, "slave1", OLD)
    create_change_table(relay, "tblCTOrders_1")

    settings = make_settings(change_retention_hours=24)
    dropped = RelayMaintenance(settings, relay, clock=lambda: NOW).run()

    assert dropped == ["tblCTOrders_1"]
    last = relay.get_last_batch()
    assert (last.ctid, last.stop_version) == (1, 4)
    batch = MasterAgent(settings, master, master_ct, relay).initialize_batch(7)
    assert (batch.ctid, batch.start_version, batch.stop_version) == (2, 4, 7)


def test_relay_maintenance_keeps_batches_a_slave_has_not_finished(make_settings, relay, create_change_table) -> None:
    for _ in range(2):
        relay.create_batch(0, 0)
    _set_start_time(relay, 1, OLD)
    _set_start_time(relay, 2, OLD)
    _complete(relay, 1, "slave1", OLD)
    relay.create_slave_batch(relay.get_batch(1), "slave2")
    create_change_table(relay, "tblCTOrders_1")

    dropped = RelayMaintenance(make_settings(change_retention_hours=24), relay, clock=lambda: NOW).run()

    assert dropped == []
    assert relay.table_exists("tblCTOrders_1")
    assert relay.get_batch(1) is not None
    assert relay.get_batch(1, "slave1") is None
    assert relay.get_batch(1, "slave2") is not None
