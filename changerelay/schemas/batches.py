from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntFlag
from typing import Optional


class AgentType(str, Enum):
    MASTER = "master"
    SLAVE = "slave"
    SHARD_COORDINATOR = "shard_coordinator"
    NOTIFIER = "notifier"
    MASTER_MAINTENANCE = "master_maintenance"
    RELAY_MAINTENANCE = "relay_maintenance"
    SLAVE_MAINTENANCE = "slave_maintenance"


class SyncBit(IntFlag):
    """Phase-completion flags persisted in ``syncBitWise``.

    The first three bits belong to the master path, the rest to the slave path.
    """

    NONE = 0
    PUBLISH_SCHEMA_CHANGES = 1
    CAPTURE_CHANGES = 2
    UPLOAD_CHANGES = 4
    APPLY_SCHEMA_CHANGES = 8
    CONSOLIDATE_BATCHES = 16
    DOWNLOAD_CHANGES = 32
    APPLY_CHANGES = 64
    SYNC_HISTORY_TABLES = 128


ALL_SYNC_BITS = SyncBit(255)


@dataclass(frozen=True)
class ChangeTrackingBatch:
    ctid: int
    start_version: int
    stop_version: int
    progress: SyncBit = SyncBit.NONE
    start_time: Optional[datetime] = field(default=None, compare=False)

    def has(self, phase: SyncBit) -> bool:
        return SyncBit(phase) in self.progress

    def with_phase(self, phase: SyncBit) -> ChangeTrackingBatch:
        return replace(self, progress=self.progress | phase)

    def with_stop_version(self, stop_version: int) -> ChangeTrackingBatch:
        return replace(self, stop_version=stop_version)


class SchemaChangeType(str, Enum):
    RENAME = "Rename"
    MODIFY = "Modify"
    ADD = "Add"
    DROP = "Drop"


_LENGTH_TYPES = {"char", "varchar", "nchar", "nvarchar", "binary", "varbinary"}
_PRECISION_TYPES = {"decimal", "numeric"}


@dataclass(frozen=True)
class DataType:
    base_type: str
    character_maximum_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None

    def to_sql(self) -> str:
        base = self.base_type.lower()
        if base in _LENGTH_TYPES and self.character_maximum_length is not None:
            length = "max" if self.character_maximum_length == -1 else str(self.character_maximum_length)
            return f"{self.base_type}({length})"
        if base in _PRECISION_TYPES and self.numeric_precision is not None:
            return f"{self.base_type}({self.numeric_precision},{self.numeric_scale or 0})"
        return self.base_type

    def __str__(self) -> str:
        return self.to_sql()


@dataclass(frozen=True)
class TColumn:
    """A resolved column. Two columns are equal when name and key membership match."""

    name: str
    is_pk: bool = False
    data_type: Optional[DataType] = field(default=None, compare=False)
    is_nullable: bool = field(default=True, compare=False)


@dataclass(frozen=True)
class SchemaChange:
    dde_id: int
    event_type: SchemaChangeType
    schema_name: str
    table_name: str
    column_name: str
    new_column_name: Optional[str] = None
    data_type: Optional[DataType] = None


@dataclass(frozen=True)
class RowCounts:
    inserted: int = 0
    deleted: int = 0

    def __add__(self, other: RowCounts) -> RowCounts:
        return RowCounts(self.inserted + other.inserted, self.deleted + other.deleted)


@dataclass(frozen=True)
class TableInfo:
    table_name: str
    schema_name: str
    pk_list: tuple[str, ...]
    expected_rows: int
    insert_count: int = 0


@dataclass(frozen=True)
class TError:
    id: int
    message: str
    headers: Optional[str]
    log_date: Optional[datetime]
