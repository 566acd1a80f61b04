"""
Storage Adapters

- config_store.py - Device record store (YAML/JSON file or in-memory)
- history.py - Append-only historical series (SQLite)
"""

from .config_store import ConfigStore, FileConfigStore, MemoryConfigStore
from .history import HistoryRecord, HistorySink, HistoryWriter, SqliteHistorySink

__all__ = [
    "ConfigStore",
    "FileConfigStore",
    "MemoryConfigStore",
    "HistoryRecord",
    "HistorySink",
    "HistoryWriter",
    "SqliteHistorySink",
]
