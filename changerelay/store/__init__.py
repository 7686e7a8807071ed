from __future__ import annotations

from typing import Optional

from sqlalchemy.engine import make_url

from changerelay.database import get_engine
from changerelay.store.errors import DoesNotExistError, StoreError, StoreTimeoutError
from changerelay.store.mssql import MssqlStore, build_capture_sql
from changerelay.store.naming import ChangeTable
from changerelay.store.sql import SqlStore


def open_store(url: str, *, name: Optional[str] = None, query_timeout: Optional[float] = None) -> SqlStore:
    """Return the store adapter matching the dialect of ``url``."""

    store_cls = MssqlStore if make_url(url).get_backend_name() == "mssql" else SqlStore
    return store_cls(get_engine(url), name=name, query_timeout=query_timeout)


__all__ = [
    "ChangeTable",
    "DoesNotExistError",
    "MssqlStore",
    "SqlStore",
    "StoreError",
    "StoreTimeoutError",
    "build_capture_sql",
    "open_store",
]
