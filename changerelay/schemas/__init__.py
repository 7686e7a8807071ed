from changerelay.schemas.batches import (
    ALL_SYNC_BITS,
    AgentType,
    ChangeTrackingBatch,
    DataType,
    RowCounts,
    SchemaChange,
    SchemaChangeType,
    SyncBit,
    TColumn,
    TError,
    TableInfo,
)
from changerelay.schemas.tables import ColumnModifier, ColumnModifierType, TableConf, find_table

__all__ = [
    "ALL_SYNC_BITS",
    "AgentType",
    "ChangeTrackingBatch",
    "ColumnModifier",
    "ColumnModifierType",
    "DataType",
    "RowCounts",
    "SchemaChange",
    "SchemaChangeType",
    "SyncBit",
    "TColumn",
    "TError",
    "TableConf",
    "TableInfo",
    "find_table",
]
