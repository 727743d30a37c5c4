"""Data access layer."""
from event_monitor.repositories.checkpoint_cache import JsonCheckpointCache
from event_monitor.repositories.sqlite_source import DataSourceError, SqliteEventSource

__all__ = [
    "DataSourceError",
    "JsonCheckpointCache",
    "SqliteEventSource",
]
