from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, delete, func, select, update

from changerelay.models import DdlEvent, ErrorLogEntry, InitializeRecord
from changerelay.schemas import DataType, SchemaChange, SchemaChangeType, TError, TableInfo
from changerelay.store.errors import DoesNotExistError
from changerelay.store.naming import schema_change_table_name, table_info_table_name

logger = logging.getLogger(__name__)


def _schema_change_table(ctid: int) -> Table:
    return Table(
        schema_change_table_name(ctid),
        MetaData(),
        Column("CscID", Integer, primary_key=True, autoincrement=True),
        Column("CscDdeID", Integer, nullable=False),
        Column("CscTableName", String(500), nullable=False),
        Column("CscEventType", String(50), nullable=False),
        Column("CscSchema", String(100), nullable=False),
        Column("CscColumnName", String(500), nullable=False),
        Column("CscNewColumnName", String(500), nullable=True),
        Column("CscBaseDataType", String(100), nullable=True),
        Column("CscCharacterMaximumLength", Integer, nullable=True),
        Column("CscNumericPrecision", Integer, nullable=True),
        Column("CscNumericScale", Integer, nullable=True),
    )


def _table_info_table(ctid: int) -> Table:
    return Table(
        table_info_table_name(ctid),
        MetaData(),
        Column("CtiID", Integer, primary_key=True, autoincrement=True),
        Column("CtiTableName", String(500), nullable=False),
        Column("CtiSchemaName", String(100), nullable=False),
        Column("CtiPKList", String(500), nullable=False),
        Column("CtiExpectedRows", Integer, nullable=False),
        Column("CtiInsertCount", Integer, nullable=False),
    )


class BookkeepingMixin:
    """DDL events, re-initialization markers, per-batch metadata tables and the error sink."""

    def get_ddl_events(self, after: datetime) -> list[tuple[int, str]]:
        if not self.table_exists(DdlEvent.__tablename__):
            raise DoesNotExistError(
                "tblDDLEvent does not exist on the source database, unable to check for schema changes."
                " Please create the table and the trigger that populates it."
            )
        stmt = (
            select(DdlEvent.id, DdlEvent.event_data)
            .where(DdlEvent.event_time > after)
            .order_by(DdlEvent.id.asc())
        )
        with self._session_factory() as session:
            return [(row.id, row.event_data) for row in session.execute(stmt)]

    def is_being_reinitialized(self, table_name: str) -> bool:
        stmt = select(InitializeRecord.table_name).where(
            InitializeRecord.table_name == table_name,
            InitializeRecord.in_progress.is_(True),
        )
        with self._session_factory() as session:
            return session.execute(stmt).first() is not None

    def get_initialize_start_version(self, table_name: str) -> int | None:
        stmt = select(InitializeRecord.next_synch_version).where(InitializeRecord.table_name == table_name)
        with self._session_factory() as session:
            return session.execute(stmt).scalar()

    def cleanup_initialize_table(self, batch_start_time: datetime) -> int:
        with self._session_factory() as session:
            result = session.execute(
                delete(InitializeRecord).where(
                    InitializeRecord.in_progress.is_(False),
                    InitializeRecord.finish_time < batch_start_time,
                ),
                execution_options={"synchronize_session": False},
            )
            removed = result.rowcount or 0
            session.commit()
        return removed

    def create_schema_change_table(self, ctid: int) -> None:
        table = _schema_change_table(ctid)
        with self.engine.begin() as conn:
            table.drop(conn, checkfirst=True)
            table.create(conn)

    def write_schema_change(self, ctid: int, change: SchemaChange) -> None:
        data_type = change.data_type
        if change.event_type in (SchemaChangeType.ADD, SchemaChangeType.MODIFY) and data_type is None:
            raise ValueError(
                f"Schema change {change.event_type.value} for {change.table_name}.{change.column_name}"
                " requires a data type"
            )
        values = {
            "CscDdeID": change.dde_id,
            "CscTableName": change.table_name,
            "CscEventType": change.event_type.value,
            "CscSchema": change.schema_name,
            "CscColumnName": change.column_name,
            "CscNewColumnName": change.new_column_name,
            "CscBaseDataType": data_type.base_type if data_type else None,
            "CscCharacterMaximumLength": data_type.character_maximum_length if data_type else None,
            "CscNumericPrecision": data_type.numeric_precision if data_type else None,
            "CscNumericScale": data_type.numeric_scale if data_type else None,
        }
        with self.engine.begin() as conn:
            conn.execute(_schema_change_table(ctid).insert().values(**values))

    def get_schema_changes(self, ctid: int) -> list[SchemaChange]:
        name = schema_change_table_name(ctid)
        if not self.table_exists(name):
            raise DoesNotExistError(f"Schema change table {name} does not exist on {self.name}")
        table = _schema_change_table(ctid)
        changes: list[SchemaChange] = []
        with self.engine.connect() as conn:
            for row in conn.execute(select(table).order_by(table.c.CscID)).mappings():
                data_type = None
                if row["CscBaseDataType"]:
                    data_type = DataType(
                        row["CscBaseDataType"],
                        row["CscCharacterMaximumLength"],
                        row["CscNumericPrecision"],
                        row["CscNumericScale"],
                    )
                changes.append(
                    SchemaChange(
                        dde_id=row["CscDdeID"],
                        event_type=SchemaChangeType(row["CscEventType"]),
                        schema_name=row["CscSchema"],
                        table_name=row["CscTableName"],
                        column_name=row["CscColumnName"],
                        new_column_name=row["CscNewColumnName"],
                        data_type=data_type,
                    )
                )
        return changes

    def create_table_info_table(self, ctid: int) -> None:
        table = _table_info_table(ctid)
        with self.engine.begin() as conn:
            table.drop(conn, checkfirst=True)
            table.create(conn)

    def publish_table_info(self, ctid: int, info: TableInfo) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _table_info_table(ctid).insert().values(
                    CtiTableName=info.table_name,
                    CtiSchemaName=info.schema_name,
                    CtiPKList=",".join(info.pk_list),
                    CtiExpectedRows=info.expected_rows,
                    CtiInsertCount=info.insert_count,
                )
            )

    def get_table_info(self, ctid: int) -> list[TableInfo]:
        name = table_info_table_name(ctid)
        if not self.table_exists(name):
            raise DoesNotExistError(f"Table info table {name} does not exist on {self.name}")
        table = _table_info_table(ctid)
        with self.engine.connect() as conn:
            rows = conn.execute(select(table).order_by(table.c.CtiID)).mappings().all()
        return [
            TableInfo(
                table_name=row["CtiTableName"],
                schema_name=row["CtiSchemaName"],
                pk_list=tuple(name for name in row["CtiPKList"].split(",") if name),
                expected_rows=row["CtiExpectedRows"],
                insert_count=row["CtiInsertCount"],
            )
            for row in rows
        ]

    def get_expected_row_count(self, ctid: int) -> int:
        table = _table_info_table(ctid)
        with self.engine.connect() as conn:
            return conn.execute(select(func.coalesce(func.sum(table.c.CtiInsertCount), 0))).scalar() or 0

    def log_error(self, message: str, headers: str | None = None) -> None:
        with self._session_factory() as session:
            session.add(ErrorLogEntry(error=message, headers=headers, log_date=datetime.now(), sent=False))
            session.commit()

    def get_unsent_errors(self) -> list[TError]:
        stmt = select(ErrorLogEntry).where(ErrorLogEntry.sent.is_(False)).order_by(ErrorLogEntry.id.asc())
        with self._session_factory() as session:
            return [
                TError(id=row.id, message=row.error, headers=row.headers, log_date=row.log_date)
                for row in session.execute(stmt).scalars()
            ]

    def mark_errors_sent(self, error_ids: Iterable[int]) -> None:
        ids = list(error_ids)
        if not ids:
            return
        with self._session_factory() as session:
            session.execute(
                update(ErrorLogEntry).where(ErrorLogEntry.id.in_(ids)).values(sent=True),
                execution_options={"synchronize_session": False},
            )
            session.commit()
