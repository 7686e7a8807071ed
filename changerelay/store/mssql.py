from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import text

from changerelay.schemas import DataType, TColumn, TableConf
from changerelay.store.errors import DoesNotExistError, StoreError
from changerelay.store.naming import ChangeTable
from changerelay.store.sql import SqlStore

logger = logging.getLogger(__name__)


def _quote(identifier: str) -> str:
    return f"[{identifier.replace(']', ']]')}]"


def _select_expression(table: TableConf, column: TColumn) -> str:
    modifier = table.modifier_for(column.name)
    if modifier is not None:
        return f"LEFT(CAST(P.{_quote(column.name)} AS NVARCHAR(MAX)),{modifier.length}) as '{column.name}'"
    alias = "CT" if column.is_pk else "P"
    return f"{alias}.{_quote(column.name)}"


def build_capture_sql(table: TableConf, source_database: str, dest_database: str, ct_name: str) -> str:
    """SELECT ... INTO statement that materializes a change table from CHANGETABLE.

    Key columns come from the change table so deletes keep their key values. The statement
    takes ``:start_version`` and ``:stop_version`` parameters.
    """

    if not table.primary_keys:
        raise ValueError(f"{table.full_name} has no primary key columns")
    source = f"{_quote(source_database)}.{_quote(table.schema_name)}.{_quote(table.name)}"
    columns = ",".join(_select_expression(table, column) for column in table.columns)
    join = " AND ".join(f"P.{_quote(name)} = CT.{_quote(name)}" for name in table.primary_keys)
    not_null = " AND ".join(f"P.{_quote(name)} IS NOT NULL" for name in table.primary_keys)
    return (
        f"SELECT {columns}, CT.SYS_CHANGE_VERSION, CT.SYS_CHANGE_OPERATION"
        f" INTO {_quote(dest_database)}.{_quote(table.schema_name)}.{_quote(ct_name)}"
        f" FROM CHANGETABLE(CHANGES {source}, :start_version) CT"
        f" LEFT OUTER JOIN {source} P ON {join}"
        " WHERE (CT.SYS_CHANGE_VERSION <= :stop_version OR CT.SYS_CHANGE_CREATION_VERSION <= :stop_version)"
        f" AND (CT.SYS_CHANGE_OPERATION = 'D' OR {not_null})"
    )


class MssqlStore(SqlStore):
    """SQL Server store using native change tracking on the source side."""

    @property
    def database(self) -> str:
        return self.engine.url.database or ""

    def current_version(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT CHANGE_TRACKING_CURRENT_VERSION()")).scalar() or 0

    def is_change_tracking_enabled(self, table: TableConf) -> bool:
        stmt = text("SELECT 1 FROM sys.change_tracking_tables WHERE object_id = OBJECT_ID(:name)")
        with self.engine.connect() as conn:
            return conn.execute(stmt, {"name": table.full_name}).first() is not None

    def min_valid_version(self, table: TableConf) -> int:
        stmt = text("SELECT CHANGE_TRACKING_MIN_VALID_VERSION(OBJECT_ID(:name))")
        with self.engine.connect() as conn:
            version = conn.execute(stmt, {"name": table.full_name}).scalar()
        if version is None:
            raise DoesNotExistError(f"Change tracking is not enabled on {table.full_name}")
        return version

    def get_data_type(self, table_name: str, column_name: str, schema: Optional[str] = None) -> DataType:
        stmt = text(
            "SELECT DATA_TYPE, CHARACTER_MAXIMUM_LENGTH, NUMERIC_PRECISION, NUMERIC_SCALE"
            " FROM INFORMATION_SCHEMA.COLUMNS"
            " WHERE TABLE_SCHEMA = :schema AND TABLE_NAME = :table AND COLUMN_NAME = :column"
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt, {"schema": schema or "dbo", "table": table_name, "column": column_name}).first()
        if row is None:
            raise DoesNotExistError(f"Column {column_name} does not exist on {table_name} in {self.name}")
        return DataType(row[0], row[1], row[2], row[3])

    def capture_changes(
        self,
        table: TableConf,
        dest: SqlStore,
        ct: ChangeTable,
        start_version: int,
        stop_version: int,
    ) -> int:
        if not isinstance(dest, MssqlStore):
            raise StoreError(f"Native change capture needs a SQL Server destination, got {dest!r}")
        dest.drop_table_if_exists(ct.name, ct.schema_name)
        sql = build_capture_sql(table, self.database, dest.database, ct.name)
        logger.debug("Capturing %s with: %s", table.full_name, sql)
        with self.engine.begin() as conn:
            result = conn.execute(text(sql), {"start_version": start_version, "stop_version": stop_version})
            return result.rowcount or 0
