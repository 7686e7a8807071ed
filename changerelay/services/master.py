from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from changerelay.config import Settings
from changerelay.schemas import ChangeTrackingBatch, SyncBit, TableConf, TableInfo, find_table
from changerelay.services.batch_state import BatchAction, initialize_next_batch, resize_batch
from changerelay.services.schema_changes import ddl_event_table, parse_ddl_event
from changerelay.services.workers import TableFailuresError, run_per_table
from changerelay.store import ChangeTable, DoesNotExistError, SqlStore

logger = logging.getLogger(__name__)


class InvalidSourceTableError(RuntimeError):
    """Raised when a source table cannot be captured (missing, keyless or not change tracked)."""


class MasterAgent:
    """Captures one batch of changes on a master and publishes it to the relay."""

    def __init__(
        self,
        settings: Settings,
        master: SqlStore,
        master_ct: SqlStore,
        relay: SqlStore,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.master = master
        self.master_ct = master_ct
        self.relay = relay
        self.clock = clock
        self.tables: list[TableConf] = list(settings.tables)

    def run(self) -> Optional[ChangeTrackingBatch]:
        logger.debug("Getting the current change tracking version from %s", self.master.name)
        current_version = self.master.current_version()

        batch = self.initialize_batch(current_version)
        if batch is None:
            logger.info("Previous batch has not been picked up by the shard coordinator yet, nothing to do")
            return None
        logger.info("Working on CTID %s (%s - %s)", batch.ctid, batch.start_version, batch.stop_version)

        if not batch.has(SyncBit.PUBLISH_SCHEMA_CHANGES):
            logger.info("Beginning publish schema changes phase")
            self.relay.create_schema_change_table(batch.ctid)
            previous_start = self.relay.get_last_start_time(batch.ctid, SyncBit.UPLOAD_CHANGES)
            self.publish_schema_changes(batch.ctid, previous_start)
            self.relay.write_bit(batch.ctid, SyncBit.PUBLISH_SCHEMA_CHANGES)

        self.refresh_columns()

        if not batch.has(SyncBit.CAPTURE_CHANGES):
            logger.info("Beginning capture changes phase")
            stop_version = resize_batch(
                batch.start_version,
                batch.stop_version,
                current_version,
                self.settings.max_batch_size,
                self.settings.threshold_ignore_start_time,
                self.settings.threshold_ignore_end_time,
                self.clock(),
            )
            if stop_version != batch.stop_version:
                logger.debug(
                    "Resized batch due to threshold. Stop version changed from %s to %s",
                    batch.stop_version,
                    stop_version,
                )
                self.relay.update_stop_version(batch.ctid, stop_version)
                batch = batch.with_stop_version(stop_version)
            changes_captured = self.create_change_tables(batch)
            self.relay.write_bit(batch.ctid, SyncBit.CAPTURE_CHANGES)
        else:
            logger.debug("Change tables were created by a previous run, reading their row counts instead")
            changes_captured = self.get_row_counts(batch.ctid)

        logger.info("Beginning publish change tables phase")
        self.publish_change_tables(batch.ctid, changes_captured)
        self.publish_table_info(batch.ctid, changes_captured)
        self.relay.write_bit(batch.ctid, SyncBit.UPLOAD_CHANGES)

        self.cleanup_initialize_table(batch)
        logger.info("Master agent work complete for CTID %s", batch.ctid)
        return batch

    def initialize_batch(self, current_version: int) -> Optional[ChangeTrackingBatch]:
        plan = initialize_next_batch(self.relay.get_last_batch(), current_version)
        if plan.action is BatchAction.CREATE:
            if self.settings.sharding:
                return None
            batch = self.relay.create_batch(plan.start_version, plan.stop_version)
            logger.debug("Created CTID %s", batch.ctid)
            return batch
        if plan.action is BatchAction.EXTEND:
            self.relay.update_stop_version(plan.batch.ctid, plan.stop_version)
        return plan.batch

    def publish_schema_changes(self, ctid: int, after: datetime) -> int:
        logger.debug("Pulling DDL events from %s since %s", self.master.name, after)
        published = 0
        failures: dict[str, BaseException] = {}
        for dde_id, event_data in self.master.get_ddl_events(after):
            try:
                changes = parse_ddl_event(dde_id, event_data, self.tables, self.master)
                for change in changes:
                    logger.debug(
                        "Publishing schema change for DdeID %s of type %s for %s.%s",
                        change.dde_id,
                        change.event_type.value,
                        change.table_name,
                        change.column_name,
                    )
                    self.relay.write_schema_change(ctid, change)
                    published += 1
            except Exception as exc:  # noqa: B902
                table = find_table(self.tables, ddl_event_table(event_data) or "")
                if table is not None and table.stop_on_error:
                    logger.error("Publishing DdeID %s failed for %s: %s", dde_id, table.full_name, exc)
                    failures.setdefault(table.name, exc)
                    continue
                logger.exception("Publishing DdeID %s failed, continuing without it", dde_id)
        if failures:
            raise TableFailuresError("Publish schema changes", failures)
        return published

    def refresh_columns(self) -> list[TableConf]:
        refreshed = []
        for table in self.tables:
            try:
                refreshed.append(table.with_columns(self.master.get_columns(table)))
            except Exception as exc:  # noqa: B902
                if table.stop_on_error:
                    raise
                logger.error("Error setting field lists for table %s: %s", table.full_name, exc)
                refreshed.append(table)
        self.tables = refreshed
        return refreshed

    def validate_source_table(self, table: TableConf, start_version: int) -> None:
        if not self.master.table_exists(table.name, table.schema_name):
            raise InvalidSourceTableError(f"Table {table.full_name} does not exist in the source database")
        if not table.primary_keys:
            raise InvalidSourceTableError(f"Table {table.full_name} has no primary key")
        if not self.master.is_change_tracking_enabled(table):
            raise InvalidSourceTableError(f"Change tracking is not enabled on {table.full_name}")
        min_valid = self.master.min_valid_version(table)
        if min_valid > start_version:
            raise InvalidSourceTableError(
                f"Minimum valid version {min_valid} for {table.full_name} is greater than start version {start_version}"
            )

    def _capture(self, table: TableConf, batch: ChangeTrackingBatch) -> int:
        if self.master.is_being_reinitialized(table.name):
            logger.info("Skipping %s because it is being reinitialized", table.full_name)
            return 0
        start_version = batch.start_version
        override = self.master.get_initialize_start_version(table.name)
        if override is not None:
            logger.debug("Using start version %s from the reinitialization record of %s", override, table.full_name)
            start_version = override

        self.validate_source_table(table, start_version)
        ct = ChangeTable.for_batch(table, batch.ctid)
        rows = self.master.capture_changes(table, self.master_ct, ct, start_version, batch.stop_version)
        logger.info("Captured %s changed rows for %s", rows, table.full_name)
        return rows

    def create_change_tables(self, batch: ChangeTrackingBatch) -> dict[str, int]:
        results = run_per_table(
            self.tables,
            lambda table: self._capture(table, batch),
            max_threads=self.settings.max_threads,
            label="Capture changes",
            default=0,
        )
        return {name: rows or 0 for name, rows in results.items()}

    def get_row_counts(self, ctid: int) -> dict[str, int]:
        counts = {}
        for table in self.tables:
            ct = ChangeTable.for_batch(table, ctid)
            try:
                counts[table.name] = self.master_ct.row_count(ct.name, ct.schema_name)
            except DoesNotExistError:
                counts[table.name] = 0
        return counts

    def _publish(self, table: TableConf, ctid: int) -> int:
        ct = ChangeTable.for_batch(table, ctid)
        try:
            return self.master_ct.copy_table(
                self.relay,
                ct.name,
                ct.schema_name,
                timeout=self.settings.data_copy_timeout,
            )
        except DoesNotExistError:
            logger.debug("%s does not exist on %s, nothing to publish", ct.name, self.master_ct.name)
            return 0

    def publish_change_tables(self, ctid: int, changes_captured: dict[str, int]) -> dict[str, int]:
        changed = [table for table in self.tables if changes_captured.get(table.name, 0) > 0]
        results = run_per_table(
            changed,
            lambda table: self._publish(table, ctid),
            max_threads=self.settings.max_threads,
            label="Publish change tables",
            default=0,
        )
        return {name: rows or 0 for name, rows in results.items()}

    def publish_table_info(self, ctid: int, changes_captured: dict[str, int], tables: Optional[Sequence[TableConf]] = None) -> None:
        self.relay.create_table_info_table(ctid)
        for table in tables if tables is not None else self.tables:
            expected = changes_captured.get(table.name, 0)
            insert_count = 0
            if expected > 0:
                try:
                    insert_count = self.relay.count_changes(ChangeTable.for_batch(table, ctid))
                except DoesNotExistError:
                    logger.warning("%s was expected on the relay but is missing", table.name)
            self.relay.publish_table_info(
                ctid,
                TableInfo(
                    table_name=table.name,
                    schema_name=table.schema_name,
                    pk_list=tuple(table.primary_keys),
                    expected_rows=expected,
                    insert_count=insert_count,
                ),
            )

    def cleanup_initialize_table(self, batch: ChangeTrackingBatch) -> None:
        if batch.start_time is None:
            return
        try:
            removed = self.master.cleanup_initialize_table(batch.start_time)
        except Exception as exc:  # noqa: B902
            logger.warning("Unable to clean up tblCTInitialize on %s: %s", self.master.name, exc)
            return
        if removed:
            logger.debug("Removed %s finished reinitialization records", removed)
