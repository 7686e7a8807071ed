from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence

from changerelay.config import Settings
from changerelay.schemas import ChangeTrackingBatch, SyncBit, TColumn, TableConf, TableInfo
from changerelay.services.batch_state import UninitializedStateError
from changerelay.services.workers import run_per_table
from changerelay.store import ChangeTable, DoesNotExistError, SqlStore
from changerelay.store.naming import CHANGE_COLUMNS

logger = logging.getLogger(__name__)


class SchemasOutOfSyncError(RuntimeError):
    """Signals that shards captured a table with different column sets for the same batch."""


def columns_in_sync(columns_by_shard: Mapping[str, Sequence[TColumn]]) -> bool:
    """Whether every shard reports the same columns (name and key membership), ignoring order."""

    signatures = {
        frozenset((column.name.lower(), column.is_pk) for column in columns)
        for columns in columns_by_shard.values()
    }
    return len(signatures) <= 1


class ShardCoordinator:
    """Unifies per-shard batches into one batch on the consolidated relay."""

    def __init__(self, settings: Settings, relay: SqlStore, shards: Mapping[str, SqlStore]) -> None:
        self.settings = settings
        self.relay = relay
        self.master_shard = settings.resolved_master_shard
        ordered = sorted(shards, key=lambda name: name != self.master_shard)
        self.shards = {name: shards[name] for name in ordered}
        self.tables: list[TableConf] = list(settings.tables)

    def run(self) -> Optional[ChangeTrackingBatch]:
        batch = self.relay.get_last_batch()
        if batch is None:
            raise UninitializedStateError("tblCTVersion on the consolidated relay is empty, seed the first batch")

        if batch.has(SyncBit.UPLOAD_CHANGES):
            logger.info("CTID %s is already consolidated, opening the next batch", batch.ctid)
            self.create_new_batch(batch)
            return batch

        if not self.all_shards_done(batch.ctid):
            logger.info("Not all shards have finished CTID %s yet", batch.ctid)
            return None

        field_lists = self.get_field_lists(batch.ctid)
        try:
            self.check_schemas(field_lists)
        except SchemasOutOfSyncError as exc:
            logger.error("%s; reverting CTID %s on every shard", exc, batch.ctid)
            for shard in self.shards.values():
                shard.revert_batch(batch.ctid)
            return None

        self.publish_schema_changes(batch.ctid)
        merged = self.consolidate_change_tables(batch.ctid, field_lists)
        self.consolidate_table_info(batch.ctid, merged)
        self.relay.write_bit(batch.ctid, SyncBit.CAPTURE_CHANGES)
        self.relay.write_bit(batch.ctid, SyncBit.UPLOAD_CHANGES)
        self.create_new_batch(batch)
        logger.info("Consolidated CTID %s from %s shards", batch.ctid, len(self.shards))
        return batch

    def all_shards_done(self, ctid: int) -> bool:
        for name, shard in self.shards.items():
            shard_batch = shard.get_batch(ctid)
            if shard_batch is None or not shard_batch.has(SyncBit.UPLOAD_CHANGES):
                logger.debug("Shard %s has not uploaded CTID %s", name, ctid)
                return False
        return True

    def get_field_lists(self, ctid: int) -> dict[str, dict[str, list[TColumn]]]:
        """Columns of each shard's change table, keyed by table then shard. Shards without changes are absent."""

        field_lists: dict[str, dict[str, list[TColumn]]] = {table.name: {} for table in self.tables}
        skipped = {name.lower() for name in CHANGE_COLUMNS}
        for name, shard in self.shards.items():
            try:
                primary_keys = {
                    info.table_name.lower(): {key.lower() for key in info.pk_list}
                    for info in shard.get_table_info(ctid)
                }
            except DoesNotExistError:
                primary_keys = {}
            for table in self.tables:
                ct = ChangeTable.for_batch(table, ctid)
                try:
                    columns = shard.get_table_columns(ct.name, ct.schema_name)
                except DoesNotExistError:
                    continue
                keys = primary_keys.get(table.name.lower(), set())
                field_lists[table.name][name] = [
                    TColumn(column.name, column.name.lower() in keys, column.data_type, column.is_nullable)
                    for column in columns
                    if column.name.lower() not in skipped
                ]
        return field_lists

    def check_schemas(self, field_lists: Mapping[str, Mapping[str, Sequence[TColumn]]]) -> None:
        for table_name, columns_by_shard in field_lists.items():
            if not columns_in_sync(columns_by_shard):
                raise SchemasOutOfSyncError(f"Shards disagree on the columns of {table_name}")

    def publish_schema_changes(self, ctid: int) -> int:
        source = self.shards[self.master_shard]
        self.relay.create_schema_change_table(ctid)
        try:
            changes = source.get_schema_changes(ctid)
        except DoesNotExistError:
            logger.warning("Master shard %s has no schema change table for CTID %s", self.master_shard, ctid)
            return 0
        for change in changes:
            self.relay.write_schema_change(ctid, change)
        return len(changes)

    def _consolidate_table(self, table: TableConf, ctid: int, columns_by_shard: Mapping[str, Sequence[TColumn]]) -> int:
        ct = ChangeTable.for_batch(table, ctid)
        sources = [(name, self.shards[name]) for name in self.shards if name in columns_by_shard]
        if not sources:
            return 0
        first_name, first = sources[0]
        pk = [column.name for column in columns_by_shard[first_name] if column.is_pk]
        if not pk:
            raise DoesNotExistError(f"No primary key was published for {table.full_name} in CTID {ctid}")

        first.copy_table_definition(self.relay, ct.name, ct.schema_name)
        for name, shard in sources:
            merged = self.relay.merge_change_table(shard, ct, pk)
            logger.debug("Merged %s rows of %s from shard %s", merged, ct.name, name)
        return self.relay.row_count(ct.name, ct.schema_name)

    def consolidate_change_tables(
        self,
        ctid: int,
        field_lists: Mapping[str, Mapping[str, Sequence[TColumn]]],
    ) -> dict[str, int]:
        results = run_per_table(
            self.tables,
            lambda table: self._consolidate_table(table, ctid, field_lists.get(table.name, {})),
            max_threads=self.settings.max_threads,
            label="Consolidate shard change tables",
            default=0,
        )
        return {name: rows or 0 for name, rows in results.items()}

    def consolidate_table_info(self, ctid: int, merged: Mapping[str, int]) -> None:
        self.relay.create_table_info_table(ctid)
        published: set[str] = set()
        shard_info: dict[str, TableInfo] = {}
        for shard in self.shards.values():
            try:
                infos = shard.get_table_info(ctid)
            except DoesNotExistError:
                continue
            for info in infos:
                shard_info.setdefault(info.table_name.lower(), info)

        for table in self.tables:
            rows = merged.get(table.name, 0)
            if rows <= 0:
                continue
            info = shard_info.get(table.name.lower())
            pk_list = info.pk_list if info is not None else tuple(table.primary_keys)
            insert_count = self.relay.count_changes(ChangeTable.for_batch(table, ctid))
            self.relay.publish_table_info(
                ctid,
                TableInfo(table.name, table.schema_name, pk_list, expected_rows=rows, insert_count=insert_count),
            )
            published.add(table.name.lower())

        # Tables without changes still need their key list so slaves can apply later batches.
        for key, info in shard_info.items():
            if key not in published:
                self.relay.publish_table_info(ctid, info)
                published.add(key)

    def create_new_batch(self, batch: ChangeTrackingBatch) -> None:
        next_ctid = batch.ctid + 1
        if self.relay.get_batch(next_ctid) is None:
            self.relay.create_batch(0, 0, ctid=next_ctid)
        for name, shard in self.shards.items():
            if shard.get_batch(next_ctid) is not None:
                continue
            previous = shard.get_batch(batch.ctid)
            start_version = previous.stop_version if previous is not None else 0
            shard.create_batch(start_version, None, ctid=next_ctid)
            logger.debug("Opened CTID %s on shard %s starting at version %s", next_ctid, name, start_version)
