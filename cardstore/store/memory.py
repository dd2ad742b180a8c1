"""
In-process record store.

Keeps deep copies of records so callers never share mutable state with the
store. Used for tests, imports that are later flushed elsewhere, and as the
reference behaviour for the SQL store.
"""

import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from cardstore.store.base import RecordStore, StoreTransaction
from cardstore.types import CardRecord

_DELETED = object()


class MemoryTransaction(StoreTransaction):
    def __init__(self, store: "MemoryRecordStore"):
        self._store = store
        self.staged: dict[str, Any] = {}

    async def get(self, record_id: str) -> CardRecord | None:
        if record_id in self.staged:
            staged = self.staged[record_id]
            return None if staged is _DELETED else copy.deepcopy(staged)
        return await self._store.get(record_id)

    def put(self, record: CardRecord) -> None:
        self.staged[record.id] = copy.deepcopy(record)

    def delete(self, record_id: str) -> None:
        self.staged[record_id] = _DELETED


class MemoryRecordStore(RecordStore):
    """Dictionary-backed store. Insertion order is preserved by ``list_all``."""

    def __init__(self, records: list[CardRecord] | None = None, schema_version: int | None = None):
        super().__init__(schema_version)
        self._records: dict[str, CardRecord] = {}
        self._settings: dict[str, Any] = {}
        for record in records or []:
            self._apply(self._stamp(record))

    # Subclasses override this to veto a write by raising StorageError
    async def _prepare_write(self, record: CardRecord) -> None:
        pass

    def _stamp(self, record: CardRecord) -> CardRecord:
        record = copy.deepcopy(record)
        now = datetime.now(timezone.utc)
        existing = self._records.get(record.id)
        record.created_at = record.created_at or (existing.created_at if existing else None) or now
        record.updated_at = now
        return record

    def _apply(self, record: CardRecord) -> None:
        self._records[record.id] = record

    async def get(self, record_id: str) -> CardRecord | None:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None

    async def put(self, record: CardRecord) -> CardRecord:
        await self._prepare_write(record)
        stored = self._stamp(record)
        self._apply(stored)
        return copy.deepcopy(stored)

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def list_all(self) -> list[CardRecord]:
        return [copy.deepcopy(r) for r in self._records.values()]

    async def count(self) -> int:
        return len(self._records)

    async def get_setting(self, key: str) -> Any | None:
        return copy.deepcopy(self._settings.get(key))

    async def put_setting(self, key: str, value: Any) -> None:
        self._settings[key] = copy.deepcopy(value)

    async def delete_setting(self, key: str) -> bool:
        return self._settings.pop(key, None) is not None

    @asynccontextmanager
    async def transaction(self):
        tx = MemoryTransaction(self)
        yield tx

        # Every staged write is vetted before any of them is applied, and the
        # apply loop never awaits, so other coroutines see all or nothing.
        writes = [r for r in tx.staged.values() if r is not _DELETED]
        for record in writes:
            await self._prepare_write(record)
        stamped = {rid: (r if r is _DELETED else self._stamp(r)) for rid, r in tx.staged.items()}
        for record_id, record in stamped.items():
            if record is _DELETED:
                self._records.pop(record_id, None)
            else:
                self._apply(record)
