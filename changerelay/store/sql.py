from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Any, Optional

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import (
    BigInteger,
    Column,
    MetaData,
    String,
    Table,
    Unicode,
    and_,
    delete,
    func,
    insert,
    inspect,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import sqltypes
from sqlalchemy.types import TypeEngine, UserDefinedType

from changerelay.models import ChangeLogEntry, SourceVersion, TrackedTable
from changerelay.schemas import DataType, RowCounts, TColumn, TableConf
from changerelay.store.batches import BatchLogMixin
from changerelay.store.bookkeeping import BookkeepingMixin
from changerelay.store.errors import DoesNotExistError, StoreTimeoutError
from changerelay.store.naming import (
    CHANGE_COLUMNS,
    CHANGE_OPERATION_COLUMN,
    CHANGE_VERSION_COLUMN,
    HISTORY_ID_COLUMN,
    ChangeTable,
    ctid_from_table_name,
)

logger = logging.getLogger(__name__)

_PRECISION_TYPES = {"decimal", "numeric"}


class RawDataType(UserDefinedType):
    """Renders a :class:`DataType` verbatim in DDL emitted by alembic operations."""

    cache_ok = True

    def __init__(self, data_type: DataType) -> None:
        self.data_type = data_type

    def get_col_spec(self, **kw: Any) -> str:
        return self.data_type.to_sql()


def _data_type_of(type_: TypeEngine, dialect) -> DataType:
    base = type_.compile(dialect=dialect).split("(", 1)[0].strip().lower()
    length = getattr(type_, "length", None) if isinstance(type_, sqltypes.String) else None
    precision = scale = None
    if isinstance(type_, sqltypes.Numeric) and not isinstance(type_, sqltypes.Float) and base in _PRECISION_TYPES:
        precision = type_.precision
        scale = type_.scale
    return DataType(base, length, precision, scale)


def _portable_type(type_: TypeEngine, source: Engine, dest: Engine) -> TypeEngine:
    if source.dialect.name == dest.dialect.name:
        return type_
    try:
        return type_.as_generic()
    except NotImplementedError:
        logger.debug("No generic equivalent for %r, copying it as a string column", type_)
        return String()


def _deadline(timeout: Optional[float]) -> Optional[float]:
    if not timeout:
        return None
    return time.monotonic() + timeout


def _check_deadline(deadline: Optional[float], action: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise StoreTimeoutError(f"Timed out while {action}")


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    size = max(1, size)
    for index in range(0, len(items), size):
        yield items[index : index + size]


def _lowered(row: Mapping[str, Any]) -> dict[str, Any]:
    return {key.lower(): value for key, value in row.items()}


def _key_condition(table: Table, pk: Sequence[str], values: Mapping[str, Any]):
    columns = {column.name.lower(): column for column in table.columns}
    return and_(*(columns[name.lower()] == values[name.lower()] for name in pk))


class SqlStore(BatchLogMixin, BookkeepingMixin):
    """Store adapter for any SQLAlchemy backend.

    Change tracking on the source side reads the generic ``tblCTChangeLog`` catalog.
    :class:`~changerelay.store.mssql.MssqlStore` swaps in SQL Server's native change tracking.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        name: Optional[str] = None,
        query_timeout: Optional[float] = None,
        chunk_size: int = 1000,
    ) -> None:
        self.engine = engine
        self.name = name or engine.url.render_as_string(hide_password=True)
        self.query_timeout = query_timeout
        self.chunk_size = chunk_size
        self._session_factory = sessionmaker(bind=engine, autoflush=False, future=True)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == "sqlite"

    def _schema(self, schema: Optional[str]) -> Optional[str]:
        # sqlite has no schemas beyond attached databases.
        if self.is_sqlite:
            return None
        return schema

    def _reflect(self, name: str, schema: Optional[str] = None) -> Table:
        try:
            return Table(name, MetaData(), autoload_with=self.engine, schema=self._schema(schema))
        except NoSuchTableError as exc:
            raise DoesNotExistError(f"Table {name} does not exist on {self.name}") from exc

    # Schema metadata

    def table_exists(self, name: str, schema: Optional[str] = None) -> bool:
        return inspect(self.engine).has_table(name, schema=self._schema(schema))

    def list_tables(self, schema: Optional[str] = None) -> list[str]:
        return inspect(self.engine).get_table_names(schema=self._schema(schema))

    def get_columns(self, table: TableConf) -> list[TColumn]:
        """Live columns of ``table`` intersected with its configured allow-list."""

        try:
            source = self._reflect(table.name, table.schema_name)
        except DoesNotExistError:
            logger.debug("Unable to get field list for %s on %s because it does not exist", table.full_name, self.name)
            return []
        pk = {column.name.lower() for column in source.primary_key.columns}
        return [
            TColumn(
                name=column.name,
                is_pk=column.name.lower() in pk,
                data_type=_data_type_of(column.type, self.engine.dialect),
                is_nullable=bool(column.nullable),
            )
            for column in source.columns
            if table.allows_column(column.name)
        ]

    def get_primary_key(self, name: str, schema: Optional[str] = None) -> list[str]:
        constraint = inspect(self.engine).get_pk_constraint(name, schema=self._schema(schema))
        return list(constraint.get("constrained_columns") or [])

    def get_table_columns(self, name: str, schema: Optional[str] = None) -> list[TColumn]:
        table = self._reflect(name, schema)
        pk = {column.name.lower() for column in table.primary_key.columns}
        return [
            TColumn(
                name=column.name,
                is_pk=column.name.lower() in pk,
                data_type=_data_type_of(column.type, self.engine.dialect),
                is_nullable=bool(column.nullable),
            )
            for column in table.columns
        ]

    def _find_column(self, table_name: str, column_name: str, schema: Optional[str] = None) -> Optional[str]:
        if not self.table_exists(table_name, schema):
            return None
        lowered = column_name.lower()
        for column in inspect(self.engine).get_columns(table_name, schema=self._schema(schema)):
            if column["name"].lower() == lowered:
                return column["name"]
        return None

    def column_exists(self, table_name: str, column_name: str, schema: Optional[str] = None) -> bool:
        return self._find_column(table_name, column_name, schema) is not None

    def get_data_type(self, table_name: str, column_name: str, schema: Optional[str] = None) -> DataType:
        table = self._reflect(table_name, schema)
        lowered = column_name.lower()
        for column in table.columns:
            if column.name.lower() == lowered:
                return _data_type_of(column.type, self.engine.dialect)
        raise DoesNotExistError(f"Column {column_name} does not exist on {table_name} in {self.name}")

    # Change tracking (generic catalog)

    def current_version(self) -> int:
        with self._session_factory() as session:
            version = session.execute(select(SourceVersion.current_version).limit(1)).scalar()
            if version is None:
                version = session.execute(select(func.max(ChangeLogEntry.change_version))).scalar()
        return version or 0

    def _tracked_table(self, table: TableConf) -> TrackedTable | None:
        with self._session_factory() as session:
            return session.get(TrackedTable, (table.schema_name, table.name))

    def is_change_tracking_enabled(self, table: TableConf) -> bool:
        return self._tracked_table(table) is not None

    def min_valid_version(self, table: TableConf) -> int:
        tracked = self._tracked_table(table)
        if tracked is None:
            raise DoesNotExistError(f"Change tracking is not enabled on {table.full_name}")
        return tracked.min_valid_version

    def _net_changes(self, table: TableConf, start_version: int, stop_version: int) -> list[tuple[dict, int, str]]:
        stmt = (
            select(ChangeLogEntry)
            .where(
                ChangeLogEntry.schema_name == table.schema_name,
                ChangeLogEntry.table_name == table.name,
                ChangeLogEntry.change_version > start_version,
            )
            .order_by(ChangeLogEntry.change_version.asc(), ChangeLogEntry.id.asc())
        )
        latest: dict[tuple, tuple[dict, int, str]] = {}
        created: dict[tuple, int] = {}
        with self._session_factory() as session:
            for entry in session.execute(stmt).scalars():
                key_values = _lowered(entry.primary_key)
                key = tuple(sorted(key_values.items()))
                if entry.operation == "I" and key not in created:
                    created[key] = entry.change_version
                latest[key] = (key_values, entry.change_version, entry.operation)

        changes = []
        for key, (key_values, version, operation) in latest.items():
            creation_version = created.get(key)
            if creation_version is not None and operation != "D":
                operation = "I"
            if version <= stop_version or (creation_version is not None and creation_version <= stop_version):
                changes.append((key_values, version, operation))
        return changes

    def _fetch_by_keys(self, source: Table, pk: Sequence[str], keys: Sequence[dict]) -> dict[tuple, dict]:
        columns = {column.name.lower(): column for column in source.columns}
        pk_lower = [name.lower() for name in pk]
        if len(pk_lower) == 1:
            condition = columns[pk_lower[0]].in_([key[pk_lower[0]] for key in keys])
        else:
            condition = or_(*(and_(*(columns[name] == key[name] for name in pk_lower)) for key in keys))
        found = {}
        with self.engine.connect() as conn:
            for row in conn.execute(select(source).where(condition)).mappings():
                values = _lowered(row)
                found[tuple(values[name] for name in pk_lower)] = dict(row)
        return found

    def capture_changes(
        self,
        table: TableConf,
        dest: SqlStore,
        ct: ChangeTable,
        start_version: int,
        stop_version: int,
    ) -> int:
        """Drop and recreate ``ct`` on ``dest`` with every row of ``table`` changed in (start, stop]."""

        source = self._reflect(table.name, table.schema_name)
        pk = [name.lower() for name in table.primary_keys]
        wanted = {column.name.lower() for column in table.columns}
        source_columns = [column for column in source.columns if column.name.lower() in wanted]

        changes = self._net_changes(table, start_version, stop_version)
        rows: list[dict[str, Any]] = []
        for chunk in _chunks(changes, self.chunk_size):
            live = self._fetch_by_keys(source, pk, [key for key, _, _ in chunk])
            for key_values, version, operation in chunk:
                found = live.get(tuple(key_values.get(name) for name in pk))
                if found is None and operation != "D":
                    continue
                row: dict[str, Any] = {}
                for column in source_columns:
                    lowered = column.name.lower()
                    if lowered in pk:
                        value = key_values.get(lowered)
                    else:
                        value = found[column.name] if found is not None else None
                    modifier = table.modifier_for(column.name)
                    if modifier is not None and value is not None:
                        value = str(value)[: modifier.length]
                    row[column.name] = value
                row[CHANGE_VERSION_COLUMN] = version
                row[CHANGE_OPERATION_COLUMN] = operation
                rows.append(row)

        definition = []
        for column in source_columns:
            modifier = table.modifier_for(column.name)
            type_ = Unicode(modifier.length) if modifier else _portable_type(column.type, self.engine, dest.engine)
            definition.append(Column(column.name, type_, nullable=True))
        definition.append(Column(CHANGE_VERSION_COLUMN, BigInteger, nullable=True))
        definition.append(Column(CHANGE_OPERATION_COLUMN, String(1), nullable=True))

        target = dest.create_table(ct.name, definition, schema=ct.schema_name)
        dest.insert_rows(target, rows)
        logger.debug("Captured %s rows for %s into %s", len(rows), table.full_name, ct.name)
        return len(rows)

    # Tables and copies

    def create_table(
        self,
        name: str,
        columns: Iterable[Column],
        schema: Optional[str] = None,
        replace: bool = True,
    ) -> Table:
        table = Table(name, MetaData(), *columns, schema=self._schema(schema))
        with self.engine.begin() as conn:
            if replace:
                table.drop(conn, checkfirst=True)
            table.create(conn, checkfirst=not replace)
        return table

    def insert_rows(self, table: Table, rows: Sequence[Mapping[str, Any]]) -> int:
        if not rows:
            return 0
        total = 0
        with self.engine.begin() as conn:
            for chunk in _chunks(rows, self.chunk_size):
                conn.execute(insert(table), [dict(row) for row in chunk])
                total += len(chunk)
        return total

    def read_rows(self, name: str, schema: Optional[str] = None) -> list[dict[str, Any]]:
        table = self._reflect(name, schema)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(select(table)).mappings()]

    def row_count(self, name: str, schema: Optional[str] = None) -> int:
        table = self._reflect(name, schema)
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar() or 0

    def count_changes(self, ct: ChangeTable, operations: Sequence[str] = ("I", "U")) -> int:
        table = self._reflect(ct.name, ct.schema_name)
        columns = {column.name.lower(): column for column in table.columns}
        stmt = (
            select(func.count())
            .select_from(table)
            .where(columns[CHANGE_OPERATION_COLUMN.lower()].in_(list(operations)))
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def drop_table_if_exists(self, name: str, schema: Optional[str] = None) -> bool:
        if not self.table_exists(name, schema):
            return False
        table = Table(name, MetaData(), schema=self._schema(schema))
        with self.engine.begin() as conn:
            table.drop(conn)
        logger.debug("Dropped %s on %s", name, self.name)
        return True

    def drop_tables_for_ctids(self, ctids: Iterable[int], schema: Optional[str] = None) -> list[str]:
        wanted = set(ctids)
        dropped = []
        if not wanted:
            return dropped
        for name in self.list_tables(schema):
            if ctid_from_table_name(name) in wanted and self.drop_table_if_exists(name, schema):
                dropped.append(name)
        return dropped

    def _definition_for(self, source: Table, dest: SqlStore) -> list[Column]:
        return [
            Column(column.name, _portable_type(column.type, self.engine, dest.engine), nullable=True)
            for column in source.columns
        ]

    def copy_table_definition(
        self,
        dest: SqlStore,
        name: str,
        schema: Optional[str] = None,
        dest_name: Optional[str] = None,
    ) -> Table:
        source = self._reflect(name, schema)
        return dest.create_table(dest_name or name, self._definition_for(source, dest), schema=schema)

    def copy_table(
        self,
        dest: SqlStore,
        name: str,
        schema: Optional[str] = None,
        timeout: Optional[float] = None,
        dest_name: Optional[str] = None,
    ) -> int:
        """Replace ``dest_name`` on ``dest`` with the contents of ``name``, streaming rows in chunks."""

        source = self._reflect(name, schema)
        target_name = dest_name or name
        action = f"copying {name} from {self.name} to {dest.name}"
        if dest.engine is self.engine and target_name.lower() == name.lower():
            logger.debug("Skipped %s onto itself", action)
            return self.row_count(name, schema)

        target = dest.create_table(target_name, self._definition_for(source, dest), schema=schema)
        deadline = _deadline(timeout)
        copied = 0

        if dest.engine is self.engine:
            columns = [column.name for column in source.columns]
            with self.engine.begin() as conn:
                conn.execute(insert(target).from_select(columns, select(*[source.c[column] for column in columns])))
            _check_deadline(deadline, action)
            return self.row_count(target_name, schema)

        with self.engine.connect() as conn:
            result = conn.execution_options(stream_results=True).execute(select(source))
            for partition in result.mappings().partitions(self.chunk_size):
                _check_deadline(deadline, action)
                copied += dest.insert_rows(target, [dict(row) for row in partition])
        logger.debug("Copied %s rows %s", copied, action)
        return copied

    # Applying changes

    def apply_changes(self, units: Sequence[tuple[TableConf, ChangeTable]], ct_store: SqlStore) -> RowCounts:
        """Merge change tables into their target tables inside one transaction.

        ``units`` is a table and, optionally, its archive sibling. Deletes remove the target
        row, inserts and updates update it in place or insert it when absent. An update
        counts toward both inserted and deleted.
        """

        loaded = []
        for table, ct in units:
            rows = ct_store.read_rows(ct.name, ct.schema_name)
            loaded.append((table, self._reflect(table.name, table.schema_name), rows))

        deadline = _deadline(self.query_timeout)
        counts = RowCounts()
        with self.engine.begin() as conn:
            for table, target, rows in loaded:
                table_counts = self._merge_rows(conn, table, target, rows, deadline)
                logger.info(
                    "table %s: insert: %s | delete: %s", table.name, table_counts.inserted, table_counts.deleted
                )
                counts = counts + table_counts
        return counts

    def _merge_rows(self, conn, table: TableConf, target: Table, rows, deadline: Optional[float]) -> RowCounts:
        columns = {column.name.lower(): column for column in target.columns}
        pk = [name.lower() for name in table.primary_keys] or [column.name.lower() for column in target.primary_key]
        if not pk:
            raise DoesNotExistError(f"No primary key is known for {table.full_name}")
        skipped = {name.lower() for name in CHANGE_COLUMNS}
        inserted = deleted = 0

        for row in rows:
            _check_deadline(deadline, f"applying changes to {table.full_name}")
            values = _lowered(row)
            condition = _key_condition(target, pk, values)
            if values.get(CHANGE_OPERATION_COLUMN.lower()) == "D":
                deleted += conn.execute(delete(target).where(condition)).rowcount or 0
                continue

            data = {
                columns[key].name: value
                for key, value in values.items()
                if key in columns and key not in skipped
            }
            changes = {key: value for key, value in data.items() if key.lower() not in pk}
            if changes:
                matched = conn.execute(update(target).where(condition).values(changes)).rowcount or 0
            else:
                matched = conn.execute(select(func.count()).select_from(target).where(condition)).scalar() or 0
            if matched:
                inserted += matched
                deleted += matched
            else:
                conn.execute(insert(target).values(data))
                inserted += 1
        return RowCounts(inserted, deleted)

    def merge_change_table(self, source: SqlStore, ct: ChangeTable, pk: Sequence[str]) -> int:
        """Upsert a shard's change table into the unified one. Inserts and updates win over deletes."""

        rows = source.read_rows(ct.name, ct.schema_name)
        target = self._reflect(ct.name, ct.schema_name)
        columns = {column.name.lower(): column for column in target.columns}
        operation = columns[CHANGE_OPERATION_COLUMN.lower()]
        merged = 0
        with self.engine.begin() as conn:
            for row in rows:
                values = _lowered(row)
                data = {columns[key].name: value for key, value in values.items() if key in columns}
                condition = _key_condition(target, pk, values)
                existing = conn.execute(select(operation).where(condition)).first()
                if existing is None:
                    conn.execute(insert(target).values(data))
                    merged += 1
                elif existing[0] == "D" and values.get(CHANGE_OPERATION_COLUMN.lower()) in ("I", "U"):
                    conn.execute(update(target).where(condition).values(data))
                    merged += 1
        return merged

    def consolidate_change_tables(self, sources: Sequence[ChangeTable], dest: ChangeTable, pk: Sequence[str]) -> int:
        """Rebuild ``dest`` from ``sources`` (newest first), keeping one row per primary key.

        The surviving row has the highest change version. On a tie the row from the newer
        source wins.
        """

        if not sources:
            return 0
        newest = self._reflect(sources[0].name, sources[0].schema_name)
        definition = [Column(column.name, column.type, nullable=True) for column in newest.columns]
        target = self.create_table(dest.consolidated_name, definition, schema=dest.schema_name)
        known = {column.name.lower(): column.name for column in newest.columns}
        pk_lower = [name.lower() for name in pk]
        version_key = CHANGE_VERSION_COLUMN.lower()

        survivors: dict[tuple, dict[str, Any]] = {}
        for ct in sources:
            for row in self.read_rows(ct.name, ct.schema_name):
                values = _lowered(row)
                key = tuple(values.get(name) for name in pk_lower)
                current = survivors.get(key)
                if current is None or (values.get(version_key) or 0) > (current.get(version_key) or 0):
                    survivors[key] = values

        rows = [
            {known[key]: value for key, value in values.items() if key in known}
            for values in survivors.values()
        ]
        self.insert_rows(target, rows)
        logger.debug("Consolidated %s change tables into %s (%s rows)", len(sources), dest.consolidated_name, len(rows))
        return len(rows)

    def copy_into_history_table(self, ct: ChangeTable, ctid: int) -> int:
        """Stamp the rows of ``ct`` with ``ctid`` and store them in the history table.

        Rows an earlier attempt wrote for the same batch are replaced, so a retry leaves one copy.
        """

        source = self._reflect(ct.name, ct.schema_name)
        if self.table_exists(ct.history_name, ct.schema_name):
            history = self._reflect(ct.history_name, ct.schema_name)
        else:
            definition = [Column(HISTORY_ID_COLUMN, BigInteger, nullable=False)]
            definition.extend(Column(column.name, column.type, nullable=True) for column in source.columns)
            history = self.create_table(ct.history_name, definition, schema=ct.schema_name, replace=False)

        known = {column.name.lower(): column.name for column in history.columns}
        rows = []
        for row in self.read_rows(ct.name, ct.schema_name):
            values = {known[key]: value for key, value in _lowered(row).items() if key in known}
            values[known[HISTORY_ID_COLUMN.lower()]] = ctid
            rows.append(values)

        history_id = history.c[known[HISTORY_ID_COLUMN.lower()]]
        with self.engine.begin() as conn:
            conn.execute(delete(history).where(history_id == ctid))
            for chunk in _chunks(rows, self.chunk_size):
                conn.execute(insert(history), [dict(row) for row in chunk])
        return len(rows)

    # Column DDL

    def _alter(self, table_name: str, schema: Optional[str], apply) -> None:
        with self.engine.begin() as conn:
            operations = Operations(MigrationContext.configure(conn))
            with operations.batch_alter_table(table_name, schema=self._schema(schema), recreate="auto") as batch:
                apply(batch)

    def add_column(self, table_name: str, column_name: str, data_type: DataType, schema: Optional[str] = None) -> bool:
        if self.column_exists(table_name, column_name, schema):
            return False
        self._alter(
            table_name,
            schema,
            lambda batch: batch.add_column(Column(column_name, RawDataType(data_type), nullable=True)),
        )
        return True

    def drop_column(self, table_name: str, column_name: str, schema: Optional[str] = None) -> bool:
        existing = self._find_column(table_name, column_name, schema)
        if existing is None:
            return False
        self._alter(table_name, schema, lambda batch: batch.drop_column(existing))
        return True

    def rename_column(self, table_name: str, column_name: str, new_column_name: str, schema: Optional[str] = None) -> bool:
        existing = self._find_column(table_name, column_name, schema)
        if existing is None:
            return False
        self._alter(
            table_name,
            schema,
            lambda batch: batch.alter_column(existing, new_column_name=new_column_name),
        )
        return True

    def modify_column(self, table_name: str, column_name: str, data_type: DataType, schema: Optional[str] = None) -> bool:
        existing = self._find_column(table_name, column_name, schema)
        if existing is None:
            return False
        self._alter(
            table_name,
            schema,
            lambda batch: batch.alter_column(existing, type_=RawDataType(data_type)),
        )
        return True
