"""Turn DDL trigger events into column-level schema changes and replay them on a slave."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from xml.etree import ElementTree as ET

from changerelay.schemas import SchemaChange, SchemaChangeType, TableConf, find_table
from changerelay.services.workers import TableFailuresError
from changerelay.store.naming import history_table_name

logger = logging.getLogger(__name__)

_ACTION_TYPES = {
    "Alter": SchemaChangeType.MODIFY,
    "Create": SchemaChangeType.ADD,
    "Drop": SchemaChangeType.DROP,
}


def ddl_event_table(event_data: str) -> str | None:
    """Name of the table an ``EVENTDATA()`` document refers to, or None when it cannot be read."""

    try:
        root = ET.fromstring(event_data)
    except ET.ParseError:
        return None
    if root.findtext("EventType") == "RENAME" and root.findtext("ObjectType") == "COLUMN":
        return root.findtext("TargetObjectName")
    return root.findtext("ObjectName")


def parse_ddl_event(dde_id: int, event_data: str, tables: Sequence[TableConf], store) -> list[SchemaChange]:
    """Parse one ``EVENTDATA()`` document into zero or more schema changes.

    ``store`` resolves data types for added and modified columns. Events for tables that
    are not configured, and columns outside a table's allow-list, produce nothing.
    """

    root = ET.fromstring(event_data)
    event_type = root.findtext("EventType")
    if event_type == "ALTER_TABLE":
        node = root.find("AlterTableActionList")
    elif event_type == "RENAME":
        node = root.find("Parameters")
    else:
        return []

    # ALTER TABLE statements that touch no columns (e.g. enabling change tracking) have no action list.
    if node is None or len(node) == 0:
        return []

    action = node[0].tag
    if action == "Param":
        table_name = root.findtext("TargetObjectName") or ""
    else:
        table_name = root.findtext("ObjectName") or ""
    schema_name = root.findtext("SchemaName") or ""

    table = find_table(tables, table_name)
    if table is None:
        logger.debug("Ignoring DDL event %s for unconfigured table %s", dde_id, table_name)
        return []

    if action == "Param":
        column_name = root.findtext("ObjectName") or ""
        if not table.allows_column(column_name):
            return []
        return [
            SchemaChange(
                dde_id=dde_id,
                event_type=SchemaChangeType.RENAME,
                schema_name=schema_name,
                table_name=table_name,
                column_name=column_name,
                new_column_name=root.findtext("NewObjectName"),
            )
        ]

    change_type = _ACTION_TYPES.get(action)
    if change_type is None:
        return []

    changes = []
    for element in node.findall(f"{action}/Columns/Name"):
        column_name = element.text or ""
        if not table.allows_column(column_name):
            continue
        data_type = None
        if change_type is not SchemaChangeType.DROP:
            data_type = store.get_data_type(table_name, column_name, schema_name)
        changes.append(
            SchemaChange(
                dde_id=dde_id,
                event_type=change_type,
                schema_name=schema_name,
                table_name=table_name,
                column_name=column_name,
                data_type=data_type,
            )
        )
    return changes


def _apply_to(store, table_name: str, change: SchemaChange) -> bool:
    schema = change.schema_name
    if change.event_type is SchemaChangeType.RENAME:
        return store.rename_column(table_name, change.column_name, change.new_column_name, schema)
    if change.event_type is SchemaChangeType.MODIFY:
        return store.modify_column(table_name, change.column_name, change.data_type, schema)
    if change.event_type is SchemaChangeType.ADD:
        return store.add_column(table_name, change.column_name, change.data_type, schema)
    return store.drop_column(table_name, change.column_name, schema)


def apply_schema_change(change: SchemaChange, table: TableConf, store) -> bool:
    """Replay ``change`` on ``store``. Returns whether the base table was altered."""

    if not table.allows_column(change.column_name):
        logger.info(
            "Skipped schema change %s for %s.%s because the column is not replicated",
            change.event_type.value,
            table.name,
            change.column_name,
        )
        return False

    logger.info(
        "Applying schema change (DdeID %s) of type %s for table %s",
        change.dde_id,
        change.event_type.value,
        table.name,
    )
    applied = _apply_to(store, change.table_name, change)
    if not applied:
        logger.debug("Schema change %s for %s.%s was already applied", change.event_type.value, table.name, change.column_name)

    history = history_table_name(change.table_name)
    if table.record_history_table and store.table_exists(history, change.schema_name):
        _apply_to(store, history, change)
    return applied


def apply_schema_changes(changes: Sequence[SchemaChange], tables: Sequence[TableConf], store) -> int:
    """Replay ``changes`` in order. A failing table that is not ``stop_on_error`` is logged and skipped.

    Later changes of a failed stop-on-error table are not attempted, and every such failure is
    raised together as :class:`TableFailuresError` once the other tables are done.
    """

    applied = 0
    failures: dict[str, BaseException] = {}
    for change in changes:
        table = find_table(tables, change.table_name)
        if table is None or table.name in failures:
            continue
        try:
            if apply_schema_change(change, table, store):
                applied += 1
        except Exception as exc:  # noqa: B902
            if table.stop_on_error:
                logger.error("Schema change (DdeID %s) failed for %s: %s", change.dde_id, table.full_name, exc)
                failures[table.name] = exc
                continue
            logger.exception("Schema change (DdeID %s) failed for %s, continuing without it", change.dde_id, table.full_name)
    if failures:
        raise TableFailuresError("Apply schema changes", failures)
    return applied
