"""
Record store implementations.
"""

from .base import RecordStore
from .sqlite_store import SQLiteStore

__all__ = ["RecordStore", "SQLiteStore"]
