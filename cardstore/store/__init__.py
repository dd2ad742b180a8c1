"""
Record stores.

Both stores implement the ``RecordStore`` contract; the SQL store adds
optional encryption at rest.
"""

from cardstore.store.base import RecordStore, StoreTransaction
from cardstore.store.memory import MemoryRecordStore
from cardstore.store.sql import SqlRecordStore

__all__ = [
    "RecordStore",
    "StoreTransaction",
    "MemoryRecordStore",
    "SqlRecordStore",
]
