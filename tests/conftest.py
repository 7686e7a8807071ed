import sys
from pathlib import Path

from collections.abc import Callable, Generator

import pytest
from sqlalchemy import Column, Integer, String, Table, create_engine
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from changerelay import models  # noqa: E402,F401
from changerelay.config import Settings  # noqa: E402
from changerelay.database import Base  # noqa: E402
from changerelay.schemas import SyncBit  # noqa: E402
from changerelay.store import SqlStore  # noqa: E402
from changerelay.store.naming import CHANGE_OPERATION_COLUMN, CHANGE_VERSION_COLUMN  # noqa: E402

TEST_DATABASE_URL = "sqlite://"

MASTER_PATH_BITS = SyncBit.PUBLISH_SCHEMA_CHANGES | SyncBit.CAPTURE_CHANGES | SyncBit.UPLOAD_CHANGES


def _create_testing_engine():
    return create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )


@pytest.fixture()
def make_store() -> Generator[Callable[[str], SqlStore], None, None]:
    engines = []

    def _make(name: str) -> SqlStore:
        engine = _create_testing_engine()
        Base.metadata.create_all(bind=engine)
        engines.append(engine)
        return SqlStore(engine, name=name)

    yield _make
    for engine in engines:
        engine.dispose()


@pytest.fixture()
def relay(make_store) -> SqlStore:
    return make_store("relay")


@pytest.fixture()
def master(make_store) -> SqlStore:
    return make_store("master")


@pytest.fixture()
def master_ct(make_store) -> SqlStore:
    return make_store("master_ct")


@pytest.fixture()
def slave(make_store) -> SqlStore:
    return make_store("slave")


@pytest.fixture()
def slave_ct(make_store) -> SqlStore:
    return make_store("slave_ct")


@pytest.fixture()
def make_settings() -> Callable[..., Settings]:
    def _make(**overrides) -> Settings:
        values = {
            "max_threads": 1,
            "slave_identifier": "slave1",
            "tables": [{"name": "Orders"}],
        }
        values.update(overrides)
        return Settings(**values)

    return _make


def orders_columns() -> list[Column]:
    return [
        Column("OrderId", Integer, primary_key=True, autoincrement=False),
        Column("Name", String(50)),
        Column("Amount", Integer),
    ]


def change_table_columns() -> list[Column]:
    return [
        Column("OrderId", Integer),
        Column("Name", String(50)),
        Column("Amount", Integer),
        Column(CHANGE_VERSION_COLUMN, Integer),
        Column(CHANGE_OPERATION_COLUMN, String(1)),
    ]


@pytest.fixture()
def create_orders() -> Callable[..., Table]:
    def _create(store: SqlStore, rows=(), name: str = "Orders") -> Table:
        table = store.create_table(name, orders_columns())
        store.insert_rows(table, [dict(zip(("OrderId", "Name", "Amount"), row)) for row in rows])
        return table

    return _create


@pytest.fixture()
def create_change_table() -> Callable[..., Table]:
    """Build ``name`` on ``store`` from ``(order_id, name, amount, version, operation)`` tuples."""

    def _create(store: SqlStore, name: str, rows=()) -> Table:
        table = store.create_table(name, change_table_columns())
        keys = ("OrderId", "Name", "Amount", CHANGE_VERSION_COLUMN, CHANGE_OPERATION_COLUMN)
        store.insert_rows(table, [dict(zip(keys, row)) for row in rows])
        return table

    return _create


@pytest.fixture()
def seed_published_batch() -> Callable[..., int]:
    def _seed(store: SqlStore, start_version: int = 0, stop_version: int = 0, bits: SyncBit = MASTER_PATH_BITS) -> int:
        batch = store.create_batch(start_version, stop_version)
        for bit in SyncBit:
            if bit and bit in bits:
                store.write_bit(batch.ctid, bit)
        return batch.ctid

    return _seed


@pytest.fixture()
def read_table() -> Callable[..., dict]:
    def _read(store: SqlStore, name: str, key: str = "OrderId") -> dict:
        return {row[key]: row for row in store.read_rows(name)}

    return _read
