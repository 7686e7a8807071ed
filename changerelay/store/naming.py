"""Naming conventions for per-batch, consolidated and history tables.

Orchestrators address these tables through :class:`ChangeTable` values; only the
store layer turns them into physical names.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

CHANGE_VERSION_COLUMN = "SYS_CHANGE_VERSION"
CHANGE_OPERATION_COLUMN = "SYS_CHANGE_OPERATION"
HISTORY_ID_COLUMN = "CTHistID"
CHANGE_COLUMNS = (CHANGE_VERSION_COLUMN, CHANGE_OPERATION_COLUMN)


def ct_table_name(table: str, ctid: int) -> str:
    return f"tblCT{table}_{ctid}"


def consolidated_table_name(table: str, slave_identifier: str) -> str:
    return f"tblCT{table}_{slave_identifier}"


def ct_history_table_name(table: str) -> str:
    return f"tblCT{table}_History"


def history_table_name(table: str) -> str:
    return f"{table}_History"


def schema_change_table_name(ctid: int) -> str:
    return f"tblCTSchemaChange_{ctid}"


def table_info_table_name(ctid: int) -> str:
    return f"tblCTTableInfo_{ctid}"


def ctid_from_table_name(name: str) -> Optional[int]:
    """Return the batch id encoded in a ``<prefix>_<ctid>`` table name, if any."""

    prefix, sep, suffix = name.rpartition("_")
    if not sep or not prefix or not suffix.isdigit():
        return None
    return int(suffix)


@dataclass(frozen=True)
class ChangeTable:
    table_name: str
    schema_name: str
    ctid: Optional[int] = None
    slave_identifier: Optional[str] = None

    @classmethod
    def for_batch(cls, table, ctid: int) -> ChangeTable:
        return cls(table.name, table.schema_name, ctid=ctid)

    @classmethod
    def consolidated(cls, table, slave_identifier: str, ctid: Optional[int] = None) -> ChangeTable:
        return cls(table.name, table.schema_name, ctid=ctid, slave_identifier=slave_identifier)

    @property
    def name(self) -> str:
        if self.ctid is not None:
            return ct_table_name(self.table_name, self.ctid)
        return self.consolidated_name

    @property
    def consolidated_name(self) -> str:
        if self.slave_identifier is None:
            raise ValueError(f"Change table for {self.table_name} has no slave identifier")
        return consolidated_table_name(self.table_name, self.slave_identifier)

    @property
    def history_name(self) -> str:
        return ct_history_table_name(self.table_name)
