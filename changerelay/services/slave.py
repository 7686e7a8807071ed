from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from changerelay.config import Settings
from changerelay.schemas import ChangeTrackingBatch, RowCounts, SyncBit, TableConf
from changerelay.services.schema_changes import apply_schema_changes
from changerelay.services.workers import run_per_table
from changerelay.store import ChangeTable, DoesNotExistError, SqlStore

logger = logging.getLogger(__name__)


def pair_archive_tables(
    tables: Sequence[TableConf],
    changed: Sequence[str],
    archive_suffix: str = "Archive",
) -> list[tuple[TableConf, Optional[TableConf]]]:
    """Group tables with changes into apply units of a base table and its optional archive table.

    ``XArchive`` is paired with ``X`` only when both have changes in the batch; otherwise each
    table is applied on its own.
    """

    changed_names = {name.lower() for name in changed}
    by_name = {table.name.lower(): table for table in tables}
    suffix = archive_suffix.lower()
    units: list[tuple[TableConf, Optional[TableConf]]] = []
    paired_archives: set[str] = set()

    for table in tables:
        name = table.name.lower()
        if name not in changed_names or name in paired_archives:
            continue
        if suffix and name.endswith(suffix) and len(name) > len(suffix):
            base_name = name[: -len(suffix)]
            if base_name in changed_names and base_name in by_name:
                # The base table's entry picks this archive table up.
                continue
        archive = None
        archive_name = f"{name}{suffix}"
        if suffix and archive_name in changed_names and archive_name in by_name:
            archive = by_name[archive_name]
            paired_archives.add(archive_name)
        units.append((table, archive))
    return units


class SlaveAgent:
    """Downloads published batches from the relay and applies them to a slave database."""

    def __init__(
        self,
        settings: Settings,
        relay: SqlStore,
        slave: SqlStore,
        slave_ct: SqlStore,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.relay = relay
        self.slave = slave
        self.slave_ct = slave_ct
        self.clock = clock
        self.slave_identifier: str = settings.slave_identifier or ""
        self.tables: list[TableConf] = list(settings.tables)

    def run(self) -> list[ChangeTrackingBatch]:
        batches = self.initialize_batches()
        if not batches:
            logger.info("No pending batches for slave %s", self.slave_identifier)
            return []

        threshold = self.settings.batch_consolidation_threshold
        if threshold == 0 or len(batches) < threshold:
            logger.info("Running %s batch(es) individually", len(batches))
            for batch in batches:
                self.run_single_batch(batch)
        else:
            logger.info("Consolidating %s batches into one run", len(batches))
            self.run_multi_batch(batches)
        return batches

    def initialize_batches(self) -> list[ChangeTrackingBatch]:
        incomplete = self.relay.get_incomplete_slave_batches(self.slave_identifier)
        if incomplete:
            logger.debug("Resuming %s incomplete batch(es)", len(incomplete))
            return incomplete

        last = self.relay.get_last_batch(self.slave_identifier)
        if last is None:
            logger.info("Slave %s has no batches yet, starting from the first published batch", self.slave_identifier)
            return self._create_pending(0)

        if last.has(SyncBit.SYNC_HISTORY_TABLES):
            return self._create_pending(last.ctid)

        logger.debug("Last batch %s failed, retrying it", last.ctid)
        return [last]

    def _create_pending(self, after_ctid: int) -> list[ChangeTrackingBatch]:
        batches = []
        for batch in self.relay.get_pending_batches(after_ctid, SyncBit.UPLOAD_CHANGES):
            batches.append(self.relay.create_slave_batch(batch, self.slave_identifier))
        return batches

    def _write_bit(self, batch: ChangeTrackingBatch, phase: SyncBit) -> None:
        self.relay.write_bit(batch.ctid, phase, self.slave_identifier)

    def refresh_columns(self) -> list[TableConf]:
        refreshed = []
        for table in self.tables:
            try:
                refreshed.append(table.with_columns(self.slave.get_columns(table)))
            except Exception as exc:  # noqa: B902
                if table.stop_on_error:
                    raise
                logger.error("Error setting field lists for table %s: %s", table.full_name, exc)
                refreshed.append(table)
        self.tables = refreshed
        return refreshed

    # Single batch

    def run_single_batch(self, batch: ChangeTrackingBatch) -> None:
        logger.info("Working on CTID %s", batch.ctid)
        if not batch.has(SyncBit.DOWNLOAD_CHANGES):
            existing = self.copy_change_tables(batch.ctid)
            self._write_bit(batch, SyncBit.DOWNLOAD_CHANGES)
            # Completed single batches carry the same bits as consolidated ones.
            self._write_bit(batch, SyncBit.CONSOLIDATE_BATCHES)
        else:
            existing = self.populate_table_list(batch.ctid)

        if not batch.has(SyncBit.APPLY_SCHEMA_CHANGES):
            self.apply_schema_changes(batch.ctid)
            self._write_bit(batch, SyncBit.APPLY_SCHEMA_CHANGES)

        if not batch.has(SyncBit.APPLY_CHANGES):
            self.apply_changes(existing, batch.ctid)
            self._write_bit(batch, SyncBit.APPLY_CHANGES)

        if not batch.has(SyncBit.SYNC_HISTORY_TABLES):
            self.sync_history_tables(existing, batch.ctid)

        self.relay.mark_batches_complete([batch.ctid], self.clock(), self.slave_identifier)
        logger.info("CTID %s complete", batch.ctid)

    # Multiple batches

    def run_multi_batch(self, batches: Sequence[ChangeTrackingBatch]) -> None:
        ordered = sorted(batches, key=lambda item: item.ctid)
        end_batch = ordered[-1]
        relay_tables = [ct for batch in ordered for ct in self.populate_table_list(batch.ctid, self.relay)]

        if not end_batch.has(SyncBit.CONSOLIDATE_BATCHES):
            self.consolidate_batches(relay_tables)
            self._write_bit(end_batch, SyncBit.CONSOLIDATE_BATCHES)

        if not end_batch.has(SyncBit.DOWNLOAD_CHANGES):
            existing = self.copy_change_tables(end_batch.ctid, consolidated=True)
            self._write_bit(end_batch, SyncBit.DOWNLOAD_CHANGES)
        else:
            existing = self.populate_table_list(end_batch.ctid)

        for batch in ordered:
            if not batch.has(SyncBit.APPLY_SCHEMA_CHANGES):
                self.apply_schema_changes(batch.ctid)
                self._write_bit(batch, SyncBit.APPLY_SCHEMA_CHANGES)

        if not end_batch.has(SyncBit.APPLY_CHANGES):
            self.apply_changes(existing, end_batch.ctid)
            self._write_bit(end_batch, SyncBit.APPLY_CHANGES)

        if not end_batch.has(SyncBit.SYNC_HISTORY_TABLES):
            self.sync_history_tables(existing, end_batch.ctid)

        self.relay.mark_batches_complete([batch.ctid for batch in ordered], self.clock(), self.slave_identifier)
        logger.info("CTIDs %s complete", ", ".join(str(batch.ctid) for batch in ordered))

    def consolidate_batches(self, change_tables: Sequence[ChangeTable]) -> dict[str, int]:
        """Fold every batch's change table into the slave's consolidated table on the relay."""

        by_table: dict[str, list[ChangeTable]] = {}
        for ct in change_tables:
            by_table.setdefault(ct.table_name.lower(), []).append(ct)

        def _consolidate(table: TableConf) -> int:
            sources = sorted(by_table.get(table.name.lower(), []), key=lambda ct: ct.ctid, reverse=True)
            dest = ChangeTable.consolidated(table, self.slave_identifier)
            if not sources:
                # A consolidated table left over from an earlier run must not be downloaded again.
                self.relay.drop_table_if_exists(dest.consolidated_name, dest.schema_name)
                return 0
            pk = self._primary_keys(table, sources[0].ctid)
            return self.relay.consolidate_change_tables(sources, dest, pk)

        results = run_per_table(
            self.tables,
            _consolidate,
            max_threads=self.settings.max_threads,
            label="Consolidate batches",
            default=0,
        )
        return {name: rows or 0 for name, rows in results.items()}

    def _primary_keys(self, table: TableConf, ctid: int) -> list[str]:
        try:
            for info in self.relay.get_table_info(ctid):
                if info.table_name.lower() == table.name.lower() and info.pk_list:
                    return list(info.pk_list)
        except DoesNotExistError:
            logger.debug("No table info for CTID %s, using the slave's primary key for %s", ctid, table.name)
        return self.slave.get_primary_key(table.name, table.schema_name)

    # Shared phases

    def populate_table_list(self, ctid: int, store: Optional[SqlStore] = None) -> list[ChangeTable]:
        store = store or self.slave_ct
        tables = []
        for table in self.tables:
            ct = ChangeTable.consolidated(table, self.slave_identifier, ctid)
            if store.table_exists(ct.name, ct.schema_name):
                tables.append(ct)
        return tables

    def _download(self, table: TableConf, ctid: int, consolidated: bool) -> Optional[ChangeTable]:
        ct = ChangeTable.consolidated(table, self.slave_identifier, ctid)
        source_name = ct.consolidated_name if consolidated else ct.name
        try:
            self.relay.copy_table(
                self.slave_ct,
                source_name,
                ct.schema_name,
                timeout=self.settings.data_copy_timeout,
                dest_name=ct.name,
            )
        except DoesNotExistError:
            # Change tables are only published when the table had changes.
            logger.debug("%s does not exist on the relay, no changes for %s", source_name, table.name)
            return None
        return ct

    def copy_change_tables(self, ctid: int, consolidated: bool = False) -> list[ChangeTable]:
        results = run_per_table(
            self.tables,
            lambda table: self._download(table, ctid, consolidated),
            max_threads=self.settings.max_threads,
            label="Download change tables",
        )
        return [ct for ct in results.values() if ct is not None]

    def apply_schema_changes(self, ctid: int) -> int:
        try:
            changes = self.relay.get_schema_changes(ctid)
        except DoesNotExistError:
            logger.debug("No schema change table for CTID %s", ctid)
            return 0
        return apply_schema_changes(changes, self.tables, self.slave)

    def apply_changes(self, change_tables: Sequence[ChangeTable], ctid: int) -> RowCounts:
        self.refresh_columns()
        present = {ct.table_name.lower(): ct for ct in change_tables}
        units = pair_archive_tables(self.tables, list(present), self.settings.archive_suffix)
        unit_by_table = {table.name: (table, archive) for table, archive in units}

        def _apply(table: TableConf) -> RowCounts:
            table, archive = unit_by_table[table.name]
            members = [(table, ChangeTable.for_batch(table, ctid))]
            if archive is not None:
                members.append((archive, ChangeTable.for_batch(archive, ctid)))
            return self.slave.apply_changes(members, self.slave_ct)

        results = run_per_table(
            [table for table, _ in units],
            _apply,
            max_threads=self.settings.max_threads,
            label="Apply changes",
            default=RowCounts(),
        )
        total = RowCounts()
        for counts in results.values():
            total = total + (counts or RowCounts())
        logger.info("CTID %s applied: insert: %s | delete: %s", ctid, total.inserted, total.deleted)
        return total

    def sync_history_tables(self, change_tables: Sequence[ChangeTable], ctid: int) -> int:
        present = {ct.table_name.lower() for ct in change_tables}
        history_tables = [
            table for table in self.tables if table.record_history_table and table.name.lower() in present
        ]
        results = run_per_table(
            history_tables,
            lambda table: self.slave_ct.copy_into_history_table(ChangeTable.for_batch(table, ctid), ctid),
            max_threads=self.settings.max_threads,
            label="Sync history tables",
            default=0,
        )
        return sum(rows or 0 for rows in results.values())
