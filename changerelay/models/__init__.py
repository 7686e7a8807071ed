from changerelay.models.entities import (
    ChangeLogEntry,
    ChangeTrackingVersion,
    DdlEvent,
    ErrorLogEntry,
    InitializeRecord,
    SlaveChangeTrackingVersion,
    SourceVersion,
    TrackedTable,
)

__all__ = [
    "ChangeLogEntry",
    "ChangeTrackingVersion",
    "DdlEvent",
    "ErrorLogEntry",
    "InitializeRecord",
    "SlaveChangeTrackingVersion",
    "SourceVersion",
    "TrackedTable",
]
