"""
Batch fingerprint migration.

Walks a record set in fixed-size batches and writes each record's
fingerprint, ``completed`` status and bumped migration version back to the
store.

- batches run one after another; all items of a batch finish before the
  next batch starts
- items inside a batch run concurrently, each under its record lock
- transient store failures are retried per item with linear backoff
- an item that still fails is reported, never fatal to the batch or the job

Usage:
    migrator = BatchMigrator(store)
    result = await migrator.migrate(on_progress=print)
"""

import asyncio
import dataclasses
import inspect
import math
import time
from collections.abc import Callable

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from cardstore.config import MigrationSettings, settings
from cardstore.errors import CardStoreError, ErrorKind, IntegrityError, MigrationItemError, StorageError
from cardstore.fingerprint import ensure_fingerprint, fingerprint
from cardstore.store.base import RecordStore
from cardstore.types import (
    BatchError,
    CardRecord,
    MigrationBatch,
    MigrationProgress,
    MigrationResult,
    MigrationStatus,
    ProcessingEstimate,
    RecoveryResult,
    ValidationReport,
)

ProgressCallback = Callable[[MigrationProgress], object]


def make_batches(records: list[CardRecord], batch_size: int) -> list[MigrationBatch]:
    """Split records into batches, preserving input order."""
    return [
        MigrationBatch(index=i, items=records[start:start + batch_size])
        for i, start in enumerate(range(0, len(records), batch_size))
    ]


class BatchMigrator:
    """
    Drives fingerprint migration over a record store.

    Args:
        store: Record store to migrate
        migration_settings: Overrides ``settings.migration``
    """

    def __init__(self, store: RecordStore, migration_settings: MigrationSettings | None = None):
        self.store = store
        self.migration_settings = migration_settings or settings.migration

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    def needs_migration(self, record: CardRecord) -> bool:
        """False only for records carrying a well-formed fingerprint."""
        if record.fingerprint is None:
            return True
        try:
            ensure_fingerprint(record.fingerprint)
        except IntegrityError as e:
            logger.warning(f"Card {record.id} has a malformed fingerprint, re-fingerprinting: {e.message}")
            return True
        return False

    async def _migrate_item(self, record: CardRecord) -> bool:
        """Fingerprint one record. Returns False when it was already done."""
        async with self.store.record_lock(record.id):
            current = await self.store.get(record.id) or record
            if not self.needs_migration(current):
                return False

            updated = dataclasses.replace(
                current,
                fingerprint=fingerprint(current.fields),
                migration_status=MigrationStatus.COMPLETED,
                migration_version=current.migration_version + 1,
            )
            async with self.store.transaction() as tx:
                tx.put(updated)
            return True

    async def process_item(self, record: CardRecord, max_retries: int | None = None) -> bool:
        """
        Migrate one record, retrying transient store failures.

        Raises ``MigrationItemError`` once retries are exhausted.
        """
        if max_retries is None:
            max_retries = self.migration_settings.max_retries
        delay = self.migration_settings.retry_delay
        attempts = 0

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_retries + 1),
                wait=wait_incrementing(start=delay, increment=delay),
                retry=retry_if_exception_type(StorageError),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    written = await self._migrate_item(record)
        except CardStoreError as e:
            logger.error(f"Card {record.id} failed after {attempts} attempt(s): {e.message}")
            raise MigrationItemError(e.message, item_id=record.id, attempts=attempts) from e

        return written

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _run_batch(self, batch: MigrationBatch, max_retries: int) -> None:
        async def run(record: CardRecord):
            try:
                await self.process_item(record, max_retries)
            except MigrationItemError as e:
                return e
            return None

        outcomes = await asyncio.gather(*(run(r) for r in batch.items))
        batch.errors = [e for e in outcomes if e is not None]

    async def migrate(
        self,
        records: list[CardRecord] | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> MigrationResult:
        """
        Migrate ``records`` (default: every record in the store).

        ``on_progress`` is called after each batch and may be a plain
        function or a coroutine function. Setting ``cancel_event`` stops the
        run before the next batch starts; the current batch always finishes.
        """
        started = time.perf_counter()
        if batch_size is None:
            batch_size = self.migration_settings.batch_size
        if max_retries is None:
            max_retries = self.migration_settings.max_retries

        if batch_size < 1 or max_retries < 0:
            message = f"Invalid migration parameters: batch_size={batch_size}, max_retries={max_retries}"
            logger.error(message)
            return MigrationResult(
                success=False,
                total_count=len(records) if records is not None else 0,
                errors=[BatchError(batch=0, message=message)],
                duration_seconds=0.0,
                reason=ErrorKind.VALIDATION,
            )

        if records is None:
            try:
                records = await self.store.list_all()
            except StorageError as e:
                logger.error(f"Could not list cards for migration: {e.message}")
                return MigrationResult(
                    success=False,
                    total_count=0,
                    errors=[BatchError(batch=0, message=e.message)],
                    duration_seconds=round(time.perf_counter() - started, 3),
                    reason=e.kind,
                )

        total = len(records)
        result = MigrationResult(success=True, total_count=total)
        batches = make_batches(list(records), batch_size)
        logger.info(f"Migrating {total} cards in {len(batches)} batches of {batch_size}")

        handled = 0
        for batch in batches:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.warning(f"Migration cancelled before batch {batch.index + 1}/{len(batches)}")
                break

            await self._run_batch(batch, max_retries)

            failed = len(batch.errors)
            result.processed_count += len(batch.items) - failed
            result.error_count += failed
            handled += len(batch.items)

            if failed:
                result.errors.append(BatchError(
                    batch=batch.index + 1,
                    message=f"{failed} of {len(batch.items)} cards failed: {batch.errors[0].message}",
                    item_ids=[e.item_id for e in batch.errors],
                    item_errors=list(batch.errors),
                ))
                logger.warning(f"Batch {batch.index + 1}: {failed} cards failed")

            if on_progress is not None:
                progress = MigrationProgress(
                    processed_count=result.processed_count,
                    total_count=total,
                    percentage=round(handled / total * 100) if total else 100,
                    batch=batch.index + 1,
                )
                outcome = on_progress(progress)
                if inspect.isawaitable(outcome):
                    await outcome

            if batch.index < len(batches) - 1:
                await asyncio.sleep(self.migration_settings.yield_delay)

        result.success = result.error_count == 0
        if result.error_count:
            result.reason = ErrorKind.MIGRATION_ITEM
        result.duration_seconds = round(time.perf_counter() - started, 3)
        logger.info(
            f"Migration finished: {result.processed_count}/{total} processed, "
            f"{result.error_count} failed in {result.duration_seconds}s"
        )
        return result

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(self, failed_items: list) -> RecoveryResult:
        """
        Second pass over previously failed items, one at a time.

        Accepts card records, record ids, ``MigrationItemError`` or
        ``BatchError`` values (as found in ``MigrationResult.errors``).
        """
        ids: list[str] = []
        for item in failed_items:
            if isinstance(item, BatchError):
                ids.extend(item.item_ids)
            elif isinstance(item, MigrationItemError):
                ids.append(item.item_id)
            elif isinstance(item, CardRecord):
                ids.append(item.id)
            else:
                ids.append(str(item))

        result = RecoveryResult()
        for record_id in ids:
            try:
                record = await self.store.get(record_id)
            except StorageError as e:
                result.permanent_failures.append(MigrationItemError(e.message, item_id=record_id, attempts=1))
                continue
            if record is None:
                result.permanent_failures.append(MigrationItemError("Card not found", item_id=record_id))
                continue

            try:
                await self.process_item(record)
            except MigrationItemError as e:
                result.permanent_failures.append(e)
            else:
                result.recovered_count += 1

        logger.info(f"Recovered {result.recovered_count}/{len(ids)} cards")
        return result

    # ------------------------------------------------------------------
    # Reporting and maintenance
    # ------------------------------------------------------------------

    async def validate_migration(self) -> ValidationReport:
        """Fingerprint coverage across the store."""
        try:
            records = await self.store.list_all()
        except StorageError as e:
            return ValidationReport(is_valid=False, issues=[f"Could not read cards: {e.message}"])

        report = ValidationReport(total_cards=len(records))
        for record in records:
            if record.fingerprint is None:
                report.without_fingerprints += 1
            elif self.needs_migration(record):
                report.invalid_fingerprints += 1
            else:
                report.with_fingerprints += 1

        if report.without_fingerprints:
            report.issues.append(f"{report.without_fingerprints} cards have no fingerprint")
        if report.invalid_fingerprints:
            report.issues.append(f"{report.invalid_fingerprints} cards have malformed fingerprints")
        report.is_valid = not report.issues
        return report

    async def estimate_processing_time(self, card_count: int | None = None) -> ProcessingEstimate:
        if card_count is None:
            card_count = await self.store.count()
        seconds = math.ceil(card_count / self.migration_settings.cards_per_second)
        return ProcessingEstimate(
            card_count=card_count,
            batch_count=math.ceil(card_count / self.migration_settings.batch_size),
            estimated_seconds=seconds,
            estimated_minutes=math.ceil(seconds / 60),
        )

    async def cleanup_migration_data(self) -> int:
        """Reset cards left ``pending`` by an interrupted run back to ``none``."""
        try:
            records = await self.store.list_all()
        except StorageError as e:
            logger.error(f"Cleanup could not read cards: {e.message}")
            return 0

        cleaned = 0
        for record in records:
            if record.migration_status != MigrationStatus.PENDING:
                continue
            try:
                async with self.store.record_lock(record.id):
                    current = await self.store.get(record.id)
                    if current is None or current.migration_status != MigrationStatus.PENDING:
                        continue
                    await self.store.put(dataclasses.replace(current, migration_status=MigrationStatus.NONE))
            except StorageError as e:
                logger.warning(f"Could not reset card {record.id}: {e.message}")
                continue
            cleaned += 1

        if cleaned:
            logger.info(f"Reset {cleaned} pending cards")
        return cleaned
