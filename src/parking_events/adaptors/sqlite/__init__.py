from .broker import SQLiteBroker
from .event_store import SQLiteEventStore
from .factory import SQLiteBackend, open_backend, read_model_connection, sqlite_backend
from .handle import SQLiteHandle
from .snapshot_store import SQLiteSnapshotStore

__all__ = [
    "SQLiteBackend",
    "SQLiteBroker",
    "SQLiteEventStore",
    "SQLiteHandle",
    "SQLiteSnapshotStore",
    "open_backend",
    "read_model_connection",
    "sqlite_backend",
]
