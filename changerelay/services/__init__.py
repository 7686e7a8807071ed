from changerelay.services.error_log import ErrorLogHandler
from changerelay.services.maintenance import MasterMaintenance, RelayMaintenance, SlaveMaintenance
from changerelay.services.master import InvalidSourceTableError, MasterAgent
from changerelay.services.notifier import Notifier
from changerelay.services.shard_coordinator import SchemasOutOfSyncError, ShardCoordinator
from changerelay.services.slave import SlaveAgent
from changerelay.services.workers import TableFailuresError, run_per_table

__all__ = [
    "ErrorLogHandler",
    "InvalidSourceTableError",
    "MasterAgent",
    "MasterMaintenance",
    "Notifier",
    "RelayMaintenance",
    "SchemasOutOfSyncError",
    "ShardCoordinator",
    "SlaveAgent",
    "SlaveMaintenance",
    "TableFailuresError",
    "run_per_table",
]
