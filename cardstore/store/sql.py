"""
SQLAlchemy-backed record store.

Card fields are stored as JSON, or sealed with AES-GCM when a key handle is
attached. Changing the passphrase re-seals every sealed row in the same
commit that stores the new key config. Every SQLAlchemy failure surfaces as
``StorageError``.
"""

import base64
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from cardstore.database import (
    CardRow,
    SettingRow,
    create_all_tables,
    create_engine,
    create_sessionmaker,
    get_session,
)
from cardstore.errors import StorageError
from cardstore.keys.provider import AesGcmProvider, CryptoProvider, DecryptionError, KeyHandle
from cardstore.store.base import RecordStore, StoreTransaction
from cardstore.types import CardFields, CardRecord, MigrationStatus

_DELETED = object()


class SqlTransaction(StoreTransaction):
    def __init__(self, store: "SqlRecordStore"):
        self._store = store
        self.staged: dict[str, Any] = {}

    async def get(self, record_id: str) -> CardRecord | None:
        if record_id in self.staged:
            staged = self.staged[record_id]
            return None if staged is _DELETED else staged
        return await self._store.get(record_id)

    def put(self, record: CardRecord) -> None:
        self.staged[record.id] = record

    def delete(self, record_id: str) -> None:
        self.staged[record_id] = _DELETED


class SqlRecordStore(RecordStore):
    """
    Record store on an async SQLAlchemy engine.

    Args:
        url: Database URL (defaults to settings.database.url)
        engine: Optional shared engine; the store disposes only engines it created
        crypto: Provider used to seal fields once a key is attached
    """

    def __init__(
        self,
        url: str | None = None,
        engine: AsyncEngine | None = None,
        crypto: CryptoProvider | None = None,
        schema_version: int | None = None,
    ):
        super().__init__(schema_version)
        self.engine = engine or create_engine(url)
        self._owns_engine = engine is None
        self._sessions = create_sessionmaker(self.engine)
        self._crypto = crypto or AesGcmProvider()
        self._key: KeyHandle | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables on first use."""
        if self._initialized:
            return
        try:
            await create_all_tables(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not initialize database: {e}", original_error=e) from e
        self._initialized = True
        logger.debug(f"Record store ready at {self.engine.url}")

    # ------------------------------------------------------------------
    # Encryption boundary
    # ------------------------------------------------------------------

    def attach_key(self, handle: KeyHandle) -> None:
        """Seal card fields written from now on and allow reading sealed rows."""
        self._key = handle

    def detach_key(self) -> None:
        self._key = None

    @property
    def encrypting(self) -> bool:
        return self._key is not None

    def _fill_row(self, row: CardRow, record: CardRecord, now: datetime) -> None:
        payload = record.fields.to_dict()
        if self._key is not None:
            sealed = self._crypto.encrypt(self._key, json.dumps(payload, ensure_ascii=False).encode("utf-8"))
            row.payload = None
            row.encrypted = True
            row.ciphertext = base64.b64encode(sealed.ciphertext).decode("ascii")
            row.iv = base64.b64encode(sealed.iv).decode("ascii")
        else:
            row.payload = payload
            row.encrypted = False
            row.ciphertext = None
            row.iv = None

        row.fingerprint = record.fingerprint
        row.migration_status = record.migration_status.value
        row.migration_version = record.migration_version
        row.created_at = record.created_at or row.created_at or now
        row.updated_at = now

    def _to_record(self, row: CardRow) -> CardRecord:
        if row.encrypted:
            if self._key is None:
                raise StorageError("Record is encrypted and the store is locked", record_id=row.id)
            try:
                plaintext = self._crypto.decrypt(
                    self._key,
                    base64.b64decode(row.ciphertext),
                    base64.b64decode(row.iv),
                )
            except DecryptionError as e:
                raise StorageError("Record could not be decrypted with the attached key", record_id=row.id) from e
            payload = json.loads(plaintext.decode("utf-8"))
        else:
            payload = row.payload or {}

        return CardRecord(
            id=row.id,
            fields=CardFields.from_dict(payload),
            fingerprint=row.fingerprint,
            migration_status=MigrationStatus(row.migration_status or MigrationStatus.NONE.value),
            migration_version=row.migration_version or 0,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> CardRecord | None:
        await self.initialize()
        try:
            async with get_session(self._sessions) as session:
                row = await session.get(CardRow, record_id)
                return self._to_record(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Read failed for {record_id}: {e}", record_id=record_id, original_error=e) from e

    async def put(self, record: CardRecord) -> CardRecord:
        await self.initialize()
        now = datetime.now(timezone.utc)
        try:
            async with get_session(self._sessions) as session:
                row = await session.get(CardRow, record.id)
                if row is None:
                    row = CardRow(id=record.id)
                    session.add(row)
                self._fill_row(row, record, now)
                created_at = row.created_at
        except SQLAlchemyError as e:
            raise StorageError(f"Write failed for {record.id}: {e}", record_id=record.id, original_error=e) from e

        return CardRecord(
            id=record.id,
            fields=record.fields,
            fingerprint=record.fingerprint,
            migration_status=record.migration_status,
            migration_version=record.migration_version,
            created_at=created_at,
            updated_at=now,
        )

    async def delete(self, record_id: str) -> bool:
        await self.initialize()
        try:
            async with get_session(self._sessions) as session:
                row = await session.get(CardRow, record_id)
                if row is None:
                    return False
                await session.delete(row)
                return True
        except SQLAlchemyError as e:
            raise StorageError(f"Delete failed for {record_id}: {e}", record_id=record_id, original_error=e) from e

    async def list_all(self) -> list[CardRecord]:
        await self.initialize()
        try:
            async with get_session(self._sessions) as session:
                result = await session.execute(select(CardRow).order_by(CardRow.created_at, CardRow.id))
                return [self._to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Listing cards failed: {e}", original_error=e) from e

    async def find_by_fingerprint(self, token: str) -> list[CardRecord]:
        await self.initialize()
        try:
            async with get_session(self._sessions) as session:
                result = await session.execute(select(CardRow).where(CardRow.fingerprint == token))
                return [self._to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Fingerprint lookup failed: {e}", original_error=e) from e

    async def count(self) -> int:
        await self.initialize()
        try:
            async with get_session(self._sessions) as session:
                return (await session.execute(select(func.count()).select_from(CardRow))).scalar_one()
        except SQLAlchemyError as e:
            raise StorageError(f"Count failed: {e}", original_error=e) from e

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> Any | None:
        await self.initialize()
        try:
            async with get_session(self._sessions) as session:
                row = await session.get(SettingRow, key)
                return row.value if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Reading setting {key} failed: {e}", original_error=e) from e

    @staticmethod
    async def _upsert_setting(session, key: str, value: Any) -> None:
        row = await session.get(SettingRow, key)
        if row is None:
            session.add(SettingRow(key=key, value=value, updated_at=datetime.now(timezone.utc)))
        else:
            row.value = value
            row.updated_at = datetime.now(timezone.utc)

    async def put_setting(self, key: str, value: Any) -> None:
        await self.initialize()
        try:
            async with get_session(self._sessions) as session:
                await self._upsert_setting(session, key, value)
        except SQLAlchemyError as e:
            raise StorageError(f"Writing setting {key} failed: {e}", original_error=e) from e

    async def delete_setting(self, key: str) -> bool:
        await self.initialize()
        try:
            async with get_session(self._sessions) as session:
                row = await session.get(SettingRow, key)
                if row is None:
                    return False
                await session.delete(row)
                return True
        except SQLAlchemyError as e:
            raise StorageError(f"Deleting setting {key} failed: {e}", original_error=e) from e

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self):
        await self.initialize()
        tx = SqlTransaction(self)
        yield tx

        now = datetime.now(timezone.utc)
        try:
            async with get_session(self._sessions) as session:
                for record_id, record in tx.staged.items():
                    row = await session.get(CardRow, record_id)
                    if record is _DELETED:
                        if row is not None:
                            await session.delete(row)
                        continue
                    if row is None:
                        row = CardRow(id=record_id)
                        session.add(row)
                    self._fill_row(row, record, now)
        except SQLAlchemyError as e:
            raise StorageError(f"Transaction failed: {e}", original_error=e) from e

    async def reseal(self, old_key: KeyHandle, new_key: KeyHandle, setting_key: str, setting_value: Any) -> int:
        """Re-encrypt sealed rows under ``new_key`` and write the setting in one commit."""
        await self.initialize()
        resealed = 0
        try:
            async with get_session(self._sessions) as session:
                result = await session.execute(select(CardRow).where(CardRow.encrypted.is_(True)))
                for row in result.scalars().all():
                    try:
                        plaintext = self._crypto.decrypt(
                            old_key,
                            base64.b64decode(row.ciphertext),
                            base64.b64decode(row.iv),
                        )
                    except DecryptionError as e:
                        raise StorageError("Record could not be decrypted with the current key", record_id=row.id) from e
                    sealed = self._crypto.encrypt(new_key, plaintext)
                    row.ciphertext = base64.b64encode(sealed.ciphertext).decode("ascii")
                    row.iv = base64.b64encode(sealed.iv).decode("ascii")
                    resealed += 1
                await self._upsert_setting(session, setting_key, setting_value)
        except SQLAlchemyError as e:
            raise StorageError(f"Re-encrypting cards failed: {e}", original_error=e) from e

        if self._key is old_key:
            self._key = new_key
        logger.info(f"Re-encrypted {resealed} cards under {new_key.key_id}")
        return resealed

    async def close(self) -> None:
        if self._owns_engine:
            await self.engine.dispose()
