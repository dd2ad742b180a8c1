# SPDX-License-Identifier: MIT
"""Tests for batch fingerprint migration."""

import asyncio

import pytest

from cardstore.errors import ErrorKind, MigrationItemError
from cardstore.fingerprint import fingerprint, validate_fingerprint
from cardstore.migration import BatchMigrator, make_batches
from cardstore.types import BatchError, CardFields, CardRecord, MigrationStatus


class TestMakeBatches:
    def test_partitions_in_order(self, make_records):
        batches = make_batches(make_records(120), 50)
        assert [len(b.items) for b in batches] == [50, 50, 20]
        assert [b.index for b in batches] == [0, 1, 2]
        assert batches[1].items[0].id == "card-50"

    def test_empty(self):
        assert make_batches([], 50) == []


class TestMigrate:
    @pytest.mark.anyio
    async def test_fingerprints_every_record(self, memory_store, make_records, migration_settings):
        for record in make_records(5):
            await memory_store.put(record)

        result = await BatchMigrator(memory_store, migration_settings).migrate(batch_size=2)

        assert result.success
        assert result.total_count == 5
        assert result.processed_count == 5
        assert result.error_count == 0
        for record in await memory_store.list_all():
            assert record.fingerprint == fingerprint(record.fields)
            assert record.migration_status == MigrationStatus.COMPLETED
            assert record.migration_version == 1

    @pytest.mark.anyio
    async def test_rerun_skips_migrated_records(self, memory_store, make_records, migration_settings):
        for record in make_records(3):
            await memory_store.put(record)
        migrator = BatchMigrator(memory_store, migration_settings)

        await migrator.migrate()
        result = await migrator.migrate()

        assert result.success
        assert result.processed_count == 3
        assert all(r.migration_version == 1 for r in await memory_store.list_all())

    @pytest.mark.anyio
    async def test_malformed_fingerprint_is_redone(self, memory_store, migration_settings):
        await memory_store.put(CardRecord(id="a", fields=CardFields.from_dict({"name": "A"}), fingerprint="legacy_abc"))

        result = await BatchMigrator(memory_store, migration_settings).migrate()

        assert result.success
        assert validate_fingerprint((await memory_store.get("a")).fingerprint)

    @pytest.mark.anyio
    async def test_third_batch_fails(self, flaky_store_factory, make_records, migration_settings):
        records = make_records(120)
        store = flaky_store_factory(records, fail_ids={r.id for r in records[100:]})

        result = await BatchMigrator(store, migration_settings).migrate(batch_size=50, max_retries=2)

        assert not result.success
        assert result.processed_count == 100
        assert result.error_count == 20
        assert len(result.errors) == 1
        assert result.errors[0].batch == 3
        assert sorted(result.errors[0].item_ids) == sorted(r.id for r in records[100:])

    @pytest.mark.anyio
    async def test_failed_middle_batch_does_not_stop_the_job(self, flaky_store_factory, make_records, migration_settings):
        records = make_records(120)
        store = flaky_store_factory(records, fail_ids={r.id for r in records[50:100]})

        result = await BatchMigrator(store, migration_settings).migrate(batch_size=50)

        assert not result.success
        assert result.processed_count == 70
        assert result.error_count == 50
        assert len(result.errors) == 1
        assert result.errors[0].batch == 2
        last = await store.get("card-119")
        assert last.migration_status == MigrationStatus.COMPLETED

    @pytest.mark.anyio
    async def test_retries_transient_failures(self, flaky_store_factory, make_records, migration_settings):
        records = make_records(3)
        store = flaky_store_factory(records, fail_times={"card-1": 2})

        result = await BatchMigrator(store, migration_settings).migrate(max_retries=3)

        assert result.success
        assert store.write_attempts["card-1"] == 3

    @pytest.mark.anyio
    async def test_gives_up_after_max_retries(self, flaky_store_factory, make_records, migration_settings):
        store = flaky_store_factory(make_records(1), fail_ids={"card-0"})

        result = await BatchMigrator(store, migration_settings).migrate(max_retries=2)

        assert store.write_attempts["card-0"] == 3
        item_error = result.errors[0].item_errors[0]
        assert isinstance(item_error, MigrationItemError)
        assert item_error.item_id == "card-0"
        assert item_error.attempts == 3

    @pytest.mark.anyio
    async def test_progress_after_each_batch(self, memory_store, make_records, migration_settings):
        for record in make_records(5):
            await memory_store.put(record)
        updates = []

        await BatchMigrator(memory_store, migration_settings).migrate(batch_size=2, on_progress=updates.append)

        assert [u.batch for u in updates] == [1, 2, 3]
        assert [u.processed_count for u in updates] == [2, 4, 5]
        assert updates[-1].percentage == 100
        assert all(u.total_count == 5 for u in updates)

    @pytest.mark.anyio
    async def test_async_progress_callback(self, memory_store, make_records, migration_settings):
        for record in make_records(2):
            await memory_store.put(record)
        seen = []

        async def on_progress(update):
            seen.append(update.percentage)

        await BatchMigrator(memory_store, migration_settings).migrate(batch_size=1, on_progress=on_progress)
        assert seen == [50, 100]

    @pytest.mark.anyio
    async def test_cancel_between_batches(self, memory_store, make_records, migration_settings):
        for record in make_records(6):
            await memory_store.put(record)
        cancel = asyncio.Event()

        result = await BatchMigrator(memory_store, migration_settings).migrate(
            batch_size=2, on_progress=lambda _: cancel.set(), cancel_event=cancel,
        )

        assert result.cancelled
        assert result.processed_count == 2

    @pytest.mark.anyio
    async def test_explicit_records(self, memory_store, make_records, migration_settings):
        records = make_records(4)
        for record in records:
            await memory_store.put(record)

        result = await BatchMigrator(memory_store, migration_settings).migrate(records[:2])

        assert result.total_count == 2
        assert (await memory_store.get("card-3")).fingerprint is None

    @pytest.mark.anyio
    @pytest.mark.parametrize("batch_size, max_retries", [(-5, 2), (0, 2), (10, -1)])
    async def test_rejects_invalid_parameters(self, memory_store, make_records, migration_settings, batch_size, max_retries):
        for record in make_records(5):
            await memory_store.put(record)

        result = await BatchMigrator(memory_store, migration_settings).migrate(batch_size=batch_size, max_retries=max_retries)

        assert not result.success
        assert result.reason == ErrorKind.VALIDATION
        assert result.processed_count == 0
        assert all(r.fingerprint is None for r in await memory_store.list_all())

    @pytest.mark.anyio
    async def test_item_failures_carry_reason(self, flaky_store_factory, make_records, migration_settings):
        store = flaky_store_factory(make_records(2), fail_ids={"card-0"})
        result = await BatchMigrator(store, migration_settings).migrate(max_retries=0)
        assert result.reason == ErrorKind.MIGRATION_ITEM

    @pytest.mark.anyio
    async def test_empty_store(self, memory_store, migration_settings):
        result = await BatchMigrator(memory_store, migration_settings).migrate()
        assert result.success
        assert result.total_count == 0


class TestRecover:
    @pytest.mark.anyio
    async def test_second_pass(self, flaky_store_factory, make_records, migration_settings):
        records = make_records(4)
        store = flaky_store_factory(records, fail_ids={"card-1", "card-2"})
        migrator = BatchMigrator(store, migration_settings)
        result = await migrator.migrate(max_retries=0)
        assert result.error_count == 2

        store.fail_ids = {"card-2"}
        recovery = await migrator.recover(result.errors)

        assert recovery.recovered_count == 1
        assert [e.item_id for e in recovery.permanent_failures] == ["card-2"]
        assert (await store.get("card-1")).migration_status == MigrationStatus.COMPLETED

    @pytest.mark.anyio
    async def test_accepts_ids_and_records(self, memory_store, make_records, migration_settings):
        records = make_records(2)
        for record in records:
            await memory_store.put(record)

        recovery = await BatchMigrator(memory_store, migration_settings).recover(["card-0", records[1], "missing"])

        assert recovery.recovered_count == 2
        assert recovery.permanent_failures[0].item_id == "missing"

    @pytest.mark.anyio
    async def test_batch_error_input(self, memory_store, make_records, migration_settings):
        await memory_store.put(make_records(1)[0])
        recovery = await BatchMigrator(memory_store, migration_settings).recover(
            [BatchError(batch=1, message="x", item_ids=["card-0"])]
        )
        assert recovery.recovered_count == 1


class TestReporting:
    @pytest.mark.anyio
    async def test_validate_migration(self, memory_store, migration_settings):
        good = CardFields.from_dict({"name": "A"})
        await memory_store.put(CardRecord(id="a", fields=good, fingerprint=fingerprint(good)))
        await memory_store.put(CardRecord(id="b", fields=good))
        await memory_store.put(CardRecord(id="c", fields=good, fingerprint="fingerprint_bad"))

        report = await BatchMigrator(memory_store, migration_settings).validate_migration()

        assert not report.is_valid
        assert report.total_cards == 3
        assert report.with_fingerprints == 1
        assert report.without_fingerprints == 1
        assert report.invalid_fingerprints == 1
        assert len(report.issues) == 2

    @pytest.mark.anyio
    async def test_validate_after_migration(self, memory_store, make_records, migration_settings):
        for record in make_records(3):
            await memory_store.put(record)
        migrator = BatchMigrator(memory_store, migration_settings)
        await migrator.migrate()

        report = await migrator.validate_migration()
        assert report.is_valid
        assert report.issues == []

    @pytest.mark.anyio
    async def test_estimate(self, memory_store, migration_settings):
        estimate = await BatchMigrator(memory_store, migration_settings).estimate_processing_time(120)
        assert estimate.batch_count == 3
        assert estimate.estimated_seconds == 3
        assert estimate.estimated_minutes == 1

    @pytest.mark.anyio
    async def test_estimate_counts_store(self, memory_store, make_records, migration_settings):
        for record in make_records(2):
            await memory_store.put(record)
        estimate = await BatchMigrator(memory_store, migration_settings).estimate_processing_time()
        assert estimate.card_count == 2

    @pytest.mark.anyio
    async def test_cleanup_resets_pending(self, memory_store, make_records, migration_settings):
        records = make_records(3)
        records[0].migration_status = MigrationStatus.PENDING
        records[1].migration_status = MigrationStatus.PENDING
        for record in records:
            await memory_store.put(record)

        cleaned = await BatchMigrator(memory_store, migration_settings).cleanup_migration_data()

        assert cleaned == 2
        assert all(r.migration_status == MigrationStatus.NONE for r in await memory_store.list_all())
