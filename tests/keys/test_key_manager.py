# SPDX-License-Identifier: MIT
"""Tests for key derivation, verification and lockout."""

import asyncio
import statistics
import time

import pytest

from cardstore.config import KeySettings
from cardstore.errors import ErrorKind, StorageError
from cardstore.keys.manager import CONFIG_SETTING_KEY, KeyManager, SessionState
from cardstore.keys.provider import AesGcmProvider

BAD = ["wrong horse battery", "purple mountain sunset", "quiet river stones"]
NEW = ["amber lantern harbor", "silent copper orchard", "velvet thunder meadow"]


class CountingProvider(AesGcmProvider):
    """Provider that records how often a key was derived."""

    def __init__(self):
        super().__init__()
        self.derive_calls = 0

    async def derive_key(self, passphrase, salt, iterations):
        self.derive_calls += 1
        return await super().derive_key(passphrase, salt, iterations)


class GatedProvider(AesGcmProvider):
    """Provider whose derivations can be held open or slowed down."""

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay
        self.gated = False
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def derive_key(self, passphrase, salt, iterations):
        if self.gated:
            self.started.set()
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        return await super().derive_key(passphrase, salt, iterations)


@pytest.fixture
def crypto() -> CountingProvider:
    return CountingProvider()


@pytest.fixture
def manager(memory_store, crypto, key_settings) -> KeyManager:
    return KeyManager(memory_store, crypto, key_settings)


@pytest.fixture
async def configured(anyio_backend, manager, good_phrases) -> KeyManager:
    result = await manager.set_passphrase(good_phrases)
    assert result.success
    manager.clear_session()
    return manager


class TestSetPassphrase:
    @pytest.mark.anyio
    async def test_success(self, manager, memory_store, good_phrases):
        result = await manager.set_passphrase(good_phrases)

        assert result.success
        assert result.key_id.startswith("key_")
        assert result.entropy_bits >= 60
        assert manager.key_handle is not None
        assert await manager.state() == SessionState.UNLOCKED

        saved = await memory_store.get_setting(CONFIG_SETTING_KEY)
        assert saved["key_id"] == result.key_id
        assert saved["iterations"] == 1000
        assert "key" not in saved

    @pytest.mark.anyio
    async def test_fresh_salt_per_key(self, manager, memory_store, good_phrases):
        await manager.set_passphrase(good_phrases)
        first = (await memory_store.get_setting(CONFIG_SETTING_KEY))["salt"]
        await manager.set_passphrase(good_phrases)
        second = (await memory_store.get_setting(CONFIG_SETTING_KEY))["salt"]
        assert first != second

    @pytest.mark.anyio
    async def test_weak_passphrase(self, manager, memory_store):
        result = await manager.set_passphrase(["a", "b", "c"])

        assert not result.success
        assert result.reason == ErrorKind.ENTROPY
        assert result.entropy_bits < 60
        assert await memory_store.get_setting(CONFIG_SETTING_KEY) is None
        assert await manager.state() == SessionState.UNCONFIGURED

    @pytest.mark.anyio
    async def test_malformed_parts(self, manager, crypto):
        result = await manager.set_passphrase(["only", "two"])
        assert not result.success
        assert result.reason == ErrorKind.VALIDATION
        assert crypto.derive_calls == 0

    @pytest.mark.anyio
    async def test_mapping_parts(self, manager, good_phrases):
        parts = {f"phrase{i}": p for i, p in enumerate(good_phrases, start=1)}
        assert (await manager.set_passphrase(parts)).success

    @pytest.mark.anyio
    async def test_storage_failure(self, manager, memory_store, mocker, good_phrases):
        mocker.patch.object(memory_store, "put_setting", side_effect=StorageError("disk full"))
        result = await manager.set_passphrase(good_phrases)

        assert not result.success
        assert result.reason == ErrorKind.STORAGE
        assert manager.key_handle is None


class TestChangePassphrase:
    @pytest.mark.anyio
    async def test_needs_unlocked_session(self, configured, memory_store):
        before = await memory_store.get_setting(CONFIG_SETTING_KEY)

        result = await configured.set_passphrase(NEW)

        assert not result.success
        assert result.reason == ErrorKind.VALIDATION
        assert await memory_store.get_setting(CONFIG_SETTING_KEY) == before

    @pytest.mark.anyio
    async def test_replaces_key_when_unlocked(self, configured, good_phrases):
        old = (await configured.verify_passphrase(good_phrases)).key_id

        result = await configured.set_passphrase(NEW)
        assert result.success
        assert result.key_id != old
        assert configured.key_handle.key_id == result.key_id

        configured.clear_session()
        assert not (await configured.verify_passphrase(good_phrases)).success
        assert (await configured.verify_passphrase(NEW)).success

    @pytest.mark.anyio
    async def test_failed_reseal_keeps_old_key(self, configured, memory_store, mocker, good_phrases):
        await configured.verify_passphrase(good_phrases)
        old_handle = configured.key_handle
        before = await memory_store.get_setting(CONFIG_SETTING_KEY)
        mocker.patch.object(memory_store, "reseal", side_effect=StorageError("disk full"))

        result = await configured.set_passphrase(NEW)

        assert result.reason == ErrorKind.STORAGE
        assert configured.key_handle is old_handle
        assert await memory_store.get_setting(CONFIG_SETTING_KEY) == before


class TestVerifyPassphrase:
    @pytest.mark.anyio
    async def test_correct(self, configured, good_phrases):
        result = await configured.verify_passphrase(good_phrases)

        assert result.success
        assert result.key_id == configured.key_handle.key_id
        assert await configured.state() == SessionState.UNLOCKED

    @pytest.mark.anyio
    async def test_wrong(self, configured):
        result = await configured.verify_passphrase(BAD)

        assert not result.success
        assert result.reason == ErrorKind.VERIFICATION_FAILED
        assert result.remaining_attempts == 2
        assert configured.key_handle is None

    @pytest.mark.anyio
    async def test_success_resets_counter(self, configured, good_phrases):
        await configured.verify_passphrase(BAD)
        await configured.verify_passphrase(BAD)
        result = await configured.verify_passphrase(good_phrases)

        assert result.success
        assert configured.lockout.failed_attempts == 0

    @pytest.mark.anyio
    async def test_not_configured(self, manager, good_phrases):
        result = await manager.verify_passphrase(good_phrases)
        assert not result.success
        assert result.reason == ErrorKind.NOT_CONFIGURED

    @pytest.mark.anyio
    async def test_malformed_parts_do_not_count(self, configured):
        result = await configured.verify_passphrase(["x"])
        assert result.reason == ErrorKind.VALIDATION
        assert configured.lockout.failed_attempts == 0

    @pytest.mark.anyio
    async def test_new_manager_reads_persisted_config(self, configured, memory_store, key_settings, good_phrases):
        other = KeyManager(memory_store, AesGcmProvider(), key_settings)
        assert await other.state() == SessionState.LOCKED
        assert (await other.verify_passphrase(good_phrases)).success


class TestLockout:
    @pytest.mark.anyio
    async def test_locks_after_max_attempts(self, configured, crypto, good_phrases):
        results = [await configured.verify_passphrase(BAD) for _ in range(3)]
        assert [r.remaining_attempts for r in results] == [2, 1, 0]

        derived = crypto.derive_calls
        result = await configured.verify_passphrase(good_phrases)

        assert not result.success
        assert result.reason == ErrorKind.LOCKOUT
        assert result.remaining_attempts == 0
        assert crypto.derive_calls == derived
        assert await configured.state() == SessionState.LOCKED_OUT

    @pytest.mark.anyio
    async def test_lockout_drops_unlocked_key(self, configured, good_phrases):
        await configured.verify_passphrase(good_phrases)
        for _ in range(3):
            await configured.verify_passphrase(BAD)
        assert configured.key_handle is None

    @pytest.mark.anyio
    async def test_concurrent_attempts_do_not_overshoot(self, configured):
        await configured.verify_passphrase(BAD)
        await configured.verify_passphrase(BAD)

        results = await asyncio.gather(*(configured.verify_passphrase(BAD) for _ in range(5)))

        assert configured.lockout.failed_attempts == 3
        reasons = sorted(r.reason.value for r in results)
        assert reasons.count(ErrorKind.VERIFICATION_FAILED.value) == 1
        assert reasons.count(ErrorKind.LOCKOUT.value) == 4
        assert all(r.remaining_attempts == 0 for r in results)

    @pytest.mark.anyio
    async def test_set_passphrase_refused_while_locked_out(self, configured, good_phrases):
        for _ in range(3):
            await configured.verify_passphrase(BAD)
        result = await configured.set_passphrase(good_phrases)
        assert result.reason == ErrorKind.LOCKOUT

    @pytest.mark.anyio
    async def test_reset_lockout(self, configured, good_phrases):
        for _ in range(3):
            await configured.verify_passphrase(BAD)
        await configured.reset_lockout()

        assert await configured.state() == SessionState.LOCKED
        assert (await configured.verify_passphrase(good_phrases)).success


class TestConstantTime:
    """Success, failure and lockout take the same wall-clock time."""

    @staticmethod
    async def timed(manager, parts) -> float:
        started = time.perf_counter()
        await manager.verify_passphrase(parts)
        return time.perf_counter() - started

    @pytest.mark.anyio
    async def test_paths_indistinguishable(self, configured, memory_store, key_settings, good_phrases):
        good = [await self.timed(configured, good_phrases) for _ in range(3)]

        bad = []
        for _ in range(3):
            bad.append(await self.timed(configured, BAD))
            await configured.reset_lockout()

        locked = KeyManager(memory_store, AesGcmProvider(), key_settings)
        for _ in range(3):
            await locked.verify_passphrase(BAD)
        lockout = [await self.timed(locked, good_phrases) for _ in range(3)]

        medians = [statistics.median(t) for t in (good, bad, lockout)]
        assert min(medians) >= key_settings.min_verify_ms / 1000
        assert max(medians) - min(medians) < 0.01

    @pytest.mark.anyio
    async def test_lockout_padded_to_slow_derivation(self, memory_store, good_phrases):
        key_settings = KeySettings(iterations=1000, min_verify_ms=10)
        manager = KeyManager(memory_store, GatedProvider(delay=0.15), key_settings)
        await manager.set_passphrase(good_phrases)
        manager.clear_session()
        for _ in range(3):
            await manager.verify_passphrase(BAD)

        assert await self.timed(manager, good_phrases) >= 0.15


class TestSession:
    @pytest.mark.anyio
    async def test_clear_session_idempotent(self, manager, good_phrases):
        manager.clear_session()
        await manager.set_passphrase(good_phrases)
        manager.clear_session()
        manager.clear_session()

        assert manager.key_handle is None
        assert await manager.state() == SessionState.LOCKED

    @pytest.mark.anyio
    async def test_status(self, configured):
        await configured.verify_passphrase(BAD)
        status = await configured.status()
        assert status["state"] == "locked"
        assert status["failed_attempts"] == 1
        assert status["max_attempts"] == 3
        assert status["key_id"].startswith("key_")

    def test_handle_repr_hides_key(self):
        handle = asyncio.run(AesGcmProvider().derive_key(b"secret", b"salt" * 8, 1000))
        assert "secret" not in repr(handle)

    @pytest.mark.anyio
    async def test_clear_during_verify_stays_locked(self, memory_store, key_settings, good_phrases):
        crypto = GatedProvider()
        manager = KeyManager(memory_store, crypto, key_settings)
        await manager.set_passphrase(good_phrases)
        manager.clear_session()

        crypto.gated = True
        task = asyncio.create_task(manager.verify_passphrase(good_phrases))
        await crypto.started.wait()
        manager.clear_session()
        crypto.release.set()
        result = await task

        assert not result.success
        assert result.reason == ErrorKind.SESSION_CLEARED
        assert manager.key_handle is None
        assert manager.lockout.failed_attempts == 0
        assert await manager.state() == SessionState.LOCKED

        assert (await manager.verify_passphrase(good_phrases)).success
