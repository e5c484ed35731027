"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass
from typing import Protocol


@dataclass
class SecurityConfig:
    """Secret issuance and hashing configuration."""
    encryption_key: str
    api_key_prefix: str


@dataclass
class LimitsConfig:
    """Defaults applied to newly issued keys."""
    default_token_limit: int


@dataclass
class DoSGuardConfig:
    """Full-scan fallback protection."""
    circuit_threshold: int
    circuit_cooldown_seconds: float
    max_full_scan_attempts: int
    window_seconds: float
    full_scan_max_keys: int


@dataclass
class MigrationConfig:
    """Background hash migration configuration."""
    lock_ttl_ms: int
    lock_max_retries: int
    lock_retry_delay_ms: int
    queue_size: int
    workers: int


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_security_config(self) -> SecurityConfig:
        """Get security configuration."""
        ...

    def get_limits_config(self) -> LimitsConfig:
        """Get key limit defaults."""
        ...

    def get_dos_guard_config(self) -> DoSGuardConfig:
        """Get DoS guard configuration."""
        ...

    def get_migration_config(self) -> MigrationConfig:
        """Get migration configuration."""
        ...


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_security_config(self) -> SecurityConfig:
        """Get security configuration from environment variables."""
        # The server-wide secret is mixed into every hash - no default for security
        encryption_key = os.getenv("ENCRYPTION_KEY")
        if not encryption_key:
            raise ValueError(
                "ENCRYPTION_KEY environment variable is required. "
                "It is mixed into every stored API key hash and must stay stable "
                "across restarts, otherwise issued keys stop validating."
            )

        return SecurityConfig(
            encryption_key=encryption_key,
            api_key_prefix=os.getenv("API_KEY_PREFIX", "sk-"),
        )

    def get_limits_config(self) -> LimitsConfig:
        """Get key limit defaults from environment variables."""
        return LimitsConfig(
            default_token_limit=int(os.getenv("DEFAULT_TOKEN_LIMIT", "1000000")),
        )

    def get_dos_guard_config(self) -> DoSGuardConfig:
        """Get DoS guard configuration from environment variables."""
        return DoSGuardConfig(
            circuit_threshold=int(os.getenv("DOS_CIRCUIT_THRESHOLD", "10")),
            circuit_cooldown_seconds=float(os.getenv("DOS_CIRCUIT_COOLDOWN_SECONDS", "60")),
            max_full_scan_attempts=int(os.getenv("DOS_MAX_FULL_SCAN_ATTEMPTS", "5")),
            window_seconds=float(os.getenv("DOS_WINDOW_SECONDS", "60")),
            full_scan_max_keys=int(os.getenv("FULL_SCAN_MAX_KEYS", "1000")),
        )

    def get_migration_config(self) -> MigrationConfig:
        """Get migration configuration from environment variables."""
        return MigrationConfig(
            lock_ttl_ms=int(os.getenv("MIGRATION_LOCK_TTL_MS", "30000")),
            lock_max_retries=int(os.getenv("MIGRATION_LOCK_RETRIES", "3")),
            lock_retry_delay_ms=int(os.getenv("MIGRATION_LOCK_RETRY_DELAY_MS", "1000")),
            queue_size=int(os.getenv("MIGRATION_QUEUE_SIZE", "1000")),
            workers=int(os.getenv("MIGRATION_WORKERS", "2")),
        )
