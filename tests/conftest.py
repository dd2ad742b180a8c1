# SPDX-License-Identifier: MIT
"""Pytest configuration and fixtures for card store tests."""

import os

import pytest

# Set test environment variables before importing the package
os.environ.setdefault("DISABLE_LOGGING", "1")
os.environ.setdefault("CARDSTORE_DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CARDSTORE_KEY_ITERATIONS", "1000")
os.environ.setdefault("CARDSTORE_MIGRATION_RETRY_DELAY", "0")
os.environ.setdefault("CARDSTORE_MIGRATION_YIELD_DELAY", "0")

from cardstore.errors import StorageError  # noqa: E402
from cardstore.store.memory import MemoryRecordStore  # noqa: E402


class FlakyStore(MemoryRecordStore):
    """Memory store whose writes fail for chosen ids.

    ``fail_ids`` fail forever; ``fail_times`` maps an id to how many writes
    fail before it starts succeeding.
    """

    def __init__(self, *args, fail_ids=None, fail_times=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_ids = set(fail_ids or [])
        self.fail_times = dict(fail_times or {})
        self.write_attempts: dict[str, int] = {}

    async def _prepare_write(self, record):
        self.write_attempts[record.id] = self.write_attempts.get(record.id, 0) + 1
        if record.id in self.fail_ids:
            raise StorageError(f"disk full writing {record.id}", record_id=record.id)
        if self.fail_times.get(record.id, 0) > 0:
            self.fail_times[record.id] -= 1
            raise StorageError(f"busy writing {record.id}", record_id=record.id)


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def memory_store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def flaky_store_factory():
    """Build a FlakyStore preloaded with records."""
    def factory(records=None, **kwargs) -> FlakyStore:
        return FlakyStore(records, **kwargs)
    return factory


@pytest.fixture
def migration_settings():
    from cardstore.config import MigrationSettings
    return MigrationSettings(retry_delay=0, yield_delay=0)


@pytest.fixture
def key_settings():
    from cardstore.config import KeySettings
    return KeySettings(iterations=1000, min_verify_ms=100)


@pytest.fixture
def sample_card() -> dict:
    """A bilingual card as it arrives from an import."""
    return {
        "name": "王小明~Wang Xiaoming",
        "title": {"zh": "工程师", "en": "Engineer"},
        "organization": "示例科技",
        "email": "test@example.com",
        "phone": "+86 10 1234 5678",
        "address": {"primary": "北京市", "secondary": "Beijing"},
        "greetings": ["Nice to meet you"],
    }


@pytest.fixture
def good_phrases() -> list[str]:
    return ["correct horse battery", "purple mountain sunrise", "quiet river stones"]


@pytest.fixture
def make_records():
    """Build unfingerprinted card records card-0 .. card-N."""
    from cardstore.types import CardFields, CardRecord

    def factory(count: int, prefix: str = "card") -> list[CardRecord]:
        return [
            CardRecord(
                id=f"{prefix}-{i}",
                fields=CardFields.from_dict({"name": f"Person {i}", "email": f"person{i}@example.com"}),
            )
            for i in range(count)
        ]
    return factory
