"""
Card vault: the caller-facing entry point.

Wires one record store to a key manager, a duplicate detector and a batch
migrator, and exposes their operations as result-returning coroutines.
"""

import uuid
from dataclasses import dataclass

from loguru import logger

from cardstore.config import Settings, settings as default_settings
from cardstore.duplicates import DuplicateDetector, ResolutionOutcome
from cardstore.errors import ErrorKind, StorageError, ValidationError
from cardstore.fingerprint import display_name, fingerprint
from cardstore.keys.manager import KeyManager, PassphraseResult
from cardstore.keys.provider import AesGcmProvider, CryptoProvider
from cardstore.migration import BatchMigrator, ProgressCallback
from cardstore.store.base import RecordStore
from cardstore.types import (
    CardFields,
    CardRecord,
    DuplicateClassification,
    DuplicateResolution,
    DuplicateStats,
    MigrationResult,
    MigrationStatus,
    ProcessingEstimate,
    RecoveryResult,
    ValidationReport,
)


@dataclass
class ImportOutcome:
    """Result of importing one card."""

    success: bool
    record: CardRecord | None = None
    resolution: DuplicateResolution | None = None
    reason: ErrorKind | None = None
    message: str | None = None


def validate_card(fields: CardFields) -> None:
    """A card needs at least a name or an email."""
    if not (fields.supplies("name") or fields.supplies("email")):
        raise ValidationError("A card needs a name or an email", field="name")


class CardVault:
    """
    Facade over the card store components.

    Args:
        store: Record store shared by every component
        crypto: Crypto provider (defaults to AES-GCM / PBKDF2)
        config: Settings object (defaults to the module settings)
    """

    def __init__(
        self,
        store: RecordStore,
        crypto: CryptoProvider | None = None,
        config: Settings | None = None,
    ):
        config = config or default_settings
        self.store = store
        self.crypto = crypto or AesGcmProvider(config.keys.key_length)
        self.keys = KeyManager(store, self.crypto, config.keys)
        self.detector = DuplicateDetector(store, config.dedup)
        self.migrator = BatchMigrator(store, config.migration)

    async def close(self) -> None:
        self.clear_session()
        await self.store.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _sync_store_key(self) -> None:
        attach = getattr(self.store, "attach_key", None)
        detach = getattr(self.store, "detach_key", None)
        if self.keys.key_handle is not None and attach is not None:
            attach(self.keys.key_handle)
        elif self.keys.key_handle is None and detach is not None:
            detach()

    async def set_passphrase(self, parts) -> PassphraseResult:
        result = await self.keys.set_passphrase(parts)
        self._sync_store_key()
        return result

    async def verify_passphrase(self, parts) -> PassphraseResult:
        result = await self.keys.verify_passphrase(parts)
        self._sync_store_key()
        return result

    def clear_session(self) -> None:
        self.keys.clear_session()
        self._sync_store_key()

    # ------------------------------------------------------------------
    # Fingerprints and duplicates
    # ------------------------------------------------------------------

    def fingerprint(self, fields) -> str:
        return fingerprint(fields)

    def detect(self, fields, existing_records: list[CardRecord], action=None) -> DuplicateResolution:
        return self.detector.detect(fields, existing_records, action=action)

    async def resolve(self, action, existing: CardRecord, fields) -> ResolutionOutcome:
        return await self.detector.resolve(action, existing, fields)

    async def duplicate_stats(self) -> DuplicateStats:
        return await self.detector.duplicate_stats()

    async def import_card(self, fields, action=None) -> ImportOutcome:
        """
        Store a new card, or apply a duplicate action when one matches.

        ``action`` overrides the configured default for exact and similar
        matches.
        """
        try:
            candidate = CardFields.from_dict(fields)
            validate_card(candidate)
            resolution = await self.detector.detect_in_store(candidate, action=action)
        except ValidationError as e:
            return ImportOutcome(success=False, reason=e.kind, message=e.message)
        except ValueError as e:
            return ImportOutcome(success=False, reason=ErrorKind.VALIDATION, message=str(e))
        except StorageError as e:
            logger.error(f"Import failed reading cards: {e.message}")
            return ImportOutcome(success=False, reason=e.kind, message=e.message)

        if resolution.classification == DuplicateClassification.NONE:
            record = CardRecord(
                id=uuid.uuid4().hex,
                fields=candidate,
                fingerprint=resolution.fingerprint,
                migration_status=MigrationStatus.COMPLETED,
            )
            try:
                async with self.store.record_lock(record.id):
                    record = await self.store.put(record)
            except StorageError as e:
                logger.error(f"Import failed writing card: {e.message}")
                return ImportOutcome(success=False, resolution=resolution, reason=e.kind, message=e.message)
            logger.info(f"Imported card {record.id} ({display_name(candidate)})")
            return ImportOutcome(success=True, record=record, resolution=resolution)

        try:
            existing = await self.store.get(resolution.existing_id)
        except StorageError as e:
            return ImportOutcome(success=False, resolution=resolution, reason=e.kind, message=e.message)
        if existing is None:
            return ImportOutcome(
                success=False,
                resolution=resolution,
                reason=ErrorKind.STORAGE,
                message=f"Matched card {resolution.existing_id} disappeared",
            )

        outcome = await self.detector.resolve(resolution.action, existing, candidate)
        return ImportOutcome(
            success=outcome.success,
            record=outcome.record,
            resolution=resolution,
            reason=outcome.reason,
            message=outcome.message,
        )

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    async def migrate(
        self,
        records: list[CardRecord] | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_event=None,
    ) -> MigrationResult:
        return await self.migrator.migrate(
            records,
            batch_size=batch_size,
            max_retries=max_retries,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )

    async def recover(self, failed_items: list) -> RecoveryResult:
        return await self.migrator.recover(failed_items)

    async def validate_migration(self) -> ValidationReport:
        return await self.migrator.validate_migration()

    async def estimate_processing_time(self, card_count: int | None = None) -> ProcessingEstimate:
        return await self.migrator.estimate_processing_time(card_count)

    async def cleanup_migration_data(self) -> int:
        return await self.migrator.cleanup_migration_data()
