"""
Base record store interface.

All stores are key-addressed by card id and share the same contract:

- get / put / delete / list_all for card records
- get_setting / put_setting / delete_setting for small JSON documents
  (the persisted key derivation config lives here)
- transaction(): puts staged inside the block apply together when it exits
  cleanly and not at all when it raises
- record_lock(id): async context manager serializing writers of one card
  id; the underlying lock is dropped once nobody holds or waits for it
- reseal(): swap the key sealing stored cards together with the key config

Stores raise ``StorageError`` for any backend failure.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

from cardstore.config import settings
from cardstore.types import CardRecord


class StoreTransaction(ABC):
    """Write scope handed out by ``RecordStore.transaction()``."""

    @abstractmethod
    async def get(self, record_id: str) -> CardRecord | None:
        """Read a record, seeing writes staged in this transaction."""

    @abstractmethod
    def put(self, record: CardRecord) -> None:
        """Stage a record write."""

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Stage a record deletion."""


class RecordStore(ABC):
    """
    Abstract base class for card record stores.

    Subclasses must implement the record and setting primitives plus
    ``transaction()``. ``find_by_fingerprint`` falls back to a full scan.
    """

    def __init__(self, schema_version: int | None = None):
        self.schema_version = schema_version or settings.database.schema_version
        # id -> [lock, holders + waiters]
        self._record_locks: dict[str, list] = {}

    @asynccontextmanager
    async def record_lock(self, record_id: str):
        """Hold the lock serializing mutations of one record id (not re-entrant)."""
        entry = self._record_locks.get(record_id)
        if entry is None:
            entry = self._record_locks[record_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._record_locks[record_id]

    @property
    def active_locks(self) -> int:
        return len(self._record_locks)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @abstractmethod
    async def get(self, record_id: str) -> CardRecord | None:
        pass

    @abstractmethod
    async def put(self, record: CardRecord) -> CardRecord:
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        pass

    @abstractmethod
    async def list_all(self) -> list[CardRecord]:
        pass

    async def find_by_fingerprint(self, token: str) -> list[CardRecord]:
        return [r for r in await self.list_all() if r.fingerprint == token]

    async def count(self) -> int:
        return len(await self.list_all())

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_setting(self, key: str) -> Any | None:
        pass

    @abstractmethod
    async def put_setting(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    async def delete_setting(self, key: str) -> bool:
        pass

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]:
        pass

    async def reseal(self, old_key, new_key, setting_key: str, setting_value: Any) -> int:
        """
        Re-encrypt every sealed card from ``old_key`` to ``new_key`` and
        write ``setting_value`` in the same commit.

        Returns the number of cards re-encrypted. Stores that keep cards in
        clear only write the setting.
        """
        await self.put_setting(setting_key, setting_value)
        return 0

    async def close(self) -> None:
        """Release backend resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
