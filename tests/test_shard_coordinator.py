from __future__ import annotations

import pytest
from sqlalchemy import Column, String

from changerelay.schemas import SchemaChange, SchemaChangeType, SyncBit, TColumn, TableInfo
from changerelay.services.batch_state import UninitializedStateError
from changerelay.services.shard_coordinator import ShardCoordinator, columns_in_sync
from changerelay.store.naming import CHANGE_OPERATION_COLUMN

from conftest import MASTER_PATH_BITS, change_table_columns


@pytest.fixture()
def shards(make_store):
    return {"east": make_store("east"), "west": make_store("west")}


@pytest.fixture()
def coordinator_settings(make_settings):
    return make_settings(
        shard_database_urls={"east": "sqlite://", "west": "sqlite://"},
        master_shard="west",
    )


def _publish_shard_batch(shard, rows, create_change_table, bits=MASTER_PATH_BITS) -> None:
    batch = shard.create_batch(0, 10, ctid=1)
    for bit in (SyncBit.PUBLISH_SCHEMA_CHANGES, SyncBit.CAPTURE_CHANGES, SyncBit.UPLOAD_CHANGES):
        if bit in bits:
            shard.write_bit(batch.ctid, bit)
    if rows is not None:
        create_change_table(shard, "tblCTOrders_1", rows)
    shard.create_schema_change_table(1)
    shard.create_table_info_table(1)
    shard.publish_table_info(1, TableInfo("Orders", "dbo", ("OrderId",), len(rows or ())))


@pytest.mark.parametrize(
    ("columns_by_shard", "expected"),
    [
        ({}, True),
        ({"east": [TColumn("a", True), TColumn("b")]}, True),
        ({"east": [TColumn("a", True), TColumn("b")], "west": [TColumn("B"), TColumn("A", True)]}, True),
        ({"east": [TColumn("a", True), TColumn("b")], "west": [TColumn("a"), TColumn("b")]}, False),
        ({"east": [TColumn("a", True), TColumn("b")], "west": [TColumn("a", True)]}, False),
    ],
)
def test_columns_in_sync(columns_by_shard, expected) -> None:
    assert columns_in_sync(columns_by_shard) is expected


def test_coordinator_requires_seed_batch(coordinator_settings, relay, shards) -> None:
    with pytest.raises(UninitializedStateError):
        ShardCoordinator(coordinator_settings, relay, shards).run()


def test_coordinator_merges_shards_into_unified_batch(
    coordinator_settings, relay, shards, create_change_table, read_table
) -> None:
    relay.create_batch(0, 0)
    _publish_shard_batch(shards["west"], [(1, "w1", 1, 5, "I"), (2, None, None, 6, "D")], create_change_table)
    _publish_shard_batch(shards["east"], [(2, "e2", 2, 7, "U"), (3, "e3", 3, 8, "I")], create_change_table)
    shards["west"].write_schema_change(
        1, SchemaChange(4, SchemaChangeType.DROP, "dbo", "Orders", "Amount")
    )

    batch = ShardCoordinator(coordinator_settings, relay, shards).run()

    assert batch.ctid == 1
    rows = read_table(relay, "tblCTOrders_1")
    assert {key: row[CHANGE_OPERATION_COLUMN] for key, row in rows.items()} == {1: "I", 2: "U", 3: "I"}
    assert relay.get_schema_changes(1) == [SchemaChange(4, SchemaChangeType.DROP, "dbo", "Orders", "Amount")]
    (info,) = relay.get_table_info(1)
    assert (info.pk_list, info.expected_rows, info.insert_count) == (("OrderId",), 3, 3)
    assert relay.get_batch(1).progress == SyncBit.CAPTURE_CHANGES | SyncBit.UPLOAD_CHANGES

    assert relay.get_batch(2).progress == SyncBit.NONE
    for shard in shards.values():
        next_batch = shard.get_batch(2)
        assert (next_batch.start_version, next_batch.progress) == (10, SyncBit.NONE)


def test_coordinator_waits_for_every_shard(coordinator_settings, relay, shards, create_change_table) -> None:
    relay.create_batch(0, 0)
    _publish_shard_batch(shards["west"], [(1, "w1", 1, 5, "I")], create_change_table)
    _publish_shard_batch(
        shards["east"], [(2, "e2", 2, 7, "I")], create_change_table, bits=SyncBit.PUBLISH_SCHEMA_CHANGES
    )

    assert ShardCoordinator(coordinator_settings, relay, shards).run() is None
    assert relay.get_batch(1).progress == SyncBit.NONE
    assert relay.get_batch(2) is None


def test_coordinator_reverts_shards_on_schema_drift(coordinator_settings, relay, shards, create_change_table) -> None:
    relay.create_batch(0, 0)
    _publish_shard_batch(shards["west"], [(1, "w1", 1, 5, "I")], create_change_table)
    _publish_shard_batch(shards["east"], None, create_change_table)
    shards["east"].create_table("tblCTOrders_1", change_table_columns() + [Column("Extra", String(10))])

    assert ShardCoordinator(coordinator_settings, relay, shards).run() is None

    for shard in shards.values():
        assert shard.get_batch(1).progress == SyncBit.NONE
    assert relay.get_batch(1).progress == SyncBit.NONE
    assert not relay.table_exists("tblCTOrders_1")


def test_coordinator_opens_next_batch_after_consolidation(coordinator_settings, relay, shards) -> None:
    relay.create_batch(0, 0)
    relay.write_bit(1, SyncBit.CAPTURE_CHANGES)
    relay.write_bit(1, SyncBit.UPLOAD_CHANGES)
    for shard in shards.values():
        shard.create_batch(0, 10, ctid=1)

    batch = ShardCoordinator(coordinator_settings, relay, shards).run()

    assert batch.ctid == 1
    assert relay.get_batch(2) is not None
    assert all(shard.get_batch(2).start_version == 10 for shard in shards.values())
