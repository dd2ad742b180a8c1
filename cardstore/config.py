"""
Configuration management for the card record store.

Uses pydantic-settings for type-safe configuration with environment variable support.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Record store connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="CARDSTORE_DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: str = "sqlite+aiosqlite:///./cards.db"
    echo: bool = False
    schema_version: int = 3  # Bumped whenever the cards table layout changes


class KeySettings(BaseSettings):
    """Passphrase key derivation settings."""

    model_config = SettingsConfigDict(
        env_prefix="CARDSTORE_KEY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    algorithm: str = "PBKDF2-SHA256-AES-GCM"
    iterations: int = 100_000
    salt_length: int = 32  # bytes
    key_length: int = 32  # bytes (AES-256)
    min_entropy_bits: float = 60.0
    max_attempts: int = 3
    phrase_count: int = 3
    min_verify_ms: int = 100  # Every verification takes at least this long

    @field_validator("iterations", "salt_length", "max_attempts", "phrase_count")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("key_length")
    @classmethod
    def aes_key_length(cls, v: int) -> int:
        if v not in (16, 24, 32):
            raise ValueError("AES-GCM keys are 16, 24 or 32 bytes")
        return v


class DedupSettings(BaseSettings):
    """Duplicate detection policy.

    The weights and threshold are tuning knobs, not business rules.
    """

    model_config = SettingsConfigDict(
        env_prefix="CARDSTORE_DEDUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    similarity_threshold: float = 0.8
    exact_action: str = "replace"
    similar_action: str = "merge"

    # Identity fields dominate; contact details break ties
    weight_name: float = 0.3
    weight_email: float = 0.3
    weight_phone: float = 0.1
    weight_mobile: float = 0.1
    weight_address: float = 0.1
    weight_organization: float = 0.05

    @field_validator("similarity_threshold")
    @classmethod
    def unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("similarity_threshold must be within [0, 1]")
        return v

    @field_validator("exact_action", "similar_action")
    @classmethod
    def known_action(cls, v: str) -> str:
        if v not in ("replace", "merge", "skip"):
            raise ValueError(f"unknown duplicate action: {v}")
        return v

    @property
    def weights(self) -> dict[str, float]:
        """Field name -> weight, skipping disabled (zero) weights."""
        weights = {
            "name": self.weight_name,
            "email": self.weight_email,
            "phone": self.weight_phone,
            "mobile": self.weight_mobile,
            "address": self.weight_address,
            "organization": self.weight_organization,
        }
        return {k: v for k, v in weights.items() if v > 0}


class MigrationSettings(BaseSettings):
    """Batch fingerprint migration settings."""

    model_config = SettingsConfigDict(
        env_prefix="CARDSTORE_MIGRATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    batch_size: int = 50
    max_retries: int = 3
    retry_delay: float = 0.1  # seconds, multiplied by the attempt number
    yield_delay: float = 0.01  # pause between batches
    cards_per_second: int = 50  # used for time estimates only

    @field_validator("batch_size", "cards_per_second")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries cannot be negative")
        return v


class Settings(BaseSettings):
    """Main settings class that combines all settings."""

    model_config = SettingsConfigDict(
        env_prefix="CARDSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    keys: KeySettings = Field(default_factory=KeySettings)
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    migration: MigrationSettings = Field(default_factory=MigrationSettings)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience access
settings = get_settings()
