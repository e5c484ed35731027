"""
Authentication Factory following Black Box Design principles.

This factory:
- Constructs the API key stack based on configuration
- Wires dependencies together
- Returns only the service facade (hiding implementation)
"""

import logging
from typing import Any, Optional

from ...config.provider import ConfigProvider
from ..audit import SecurityAudit
from ..lock import RedisDistributedLock
from ..storage import RedisKeyStore
from .dos_guard import DoSGuard
from .hashing import HashEngine
from .interfaces import UsageRecorder, UserDirectory
from .legacy import LegacyDataAdapter
from .migration import MigrationCoordinator
from .service import ApiKeyService
from .validator import Validator

logger = logging.getLogger(__name__)


class AuthFactory:
    """
    Factory for building the API key stack.

    This is the composition root that:
    - Creates all auth components
    - Wires them together via dependency injection
    - Returns only the public interface
    """

    @staticmethod
    def build(
        config_provider: ConfigProvider,
        redis_client: Any,
        user_directory: Optional[UserDirectory] = None,
        usage_recorder: Optional[UsageRecorder] = None,
    ) -> ApiKeyService:
        """
        Build the complete API key stack.

        The migration worker is not started here; call ApiKeyService.start()
        from within the running event loop.

        Args:
            config_provider: Configuration provider
            redis_client: Async Redis client shared by store, lock and audit
            user_directory: Optional legacy user service
            usage_recorder: Optional usage/cost accounting sink

        Returns:
            ApiKeyService facade (hides all implementation details)

        Raises:
            ValueError: The server secret is not configured
        """
        security_config = config_provider.get_security_config()
        limits_config = config_provider.get_limits_config()
        guard_config = config_provider.get_dos_guard_config()
        migration_config = config_provider.get_migration_config()

        audit = SecurityAudit(redis_client)
        store = RedisKeyStore(redis_client)
        hash_engine = HashEngine(security_config.encryption_key)
        lock = RedisDistributedLock(redis_client, default_ttl_ms=migration_config.lock_ttl_ms)

        dos_guard = DoSGuard(
            threshold=guard_config.circuit_threshold,
            cooldown_seconds=guard_config.circuit_cooldown_seconds,
            max_full_scan_attempts=guard_config.max_full_scan_attempts,
            window_seconds=guard_config.window_seconds,
        )
        legacy_adapter = LegacyDataAdapter(audit=audit, user_directory=user_directory)

        migration = MigrationCoordinator(
            store=store,
            hash_engine=hash_engine,
            lock=lock,
            audit=audit,
            lock_ttl_ms=migration_config.lock_ttl_ms,
            lock_max_retries=migration_config.lock_max_retries,
            lock_retry_delay_ms=migration_config.lock_retry_delay_ms,
            queue_size=migration_config.queue_size,
            workers=migration_config.workers,
        )

        validator = Validator(
            store=store,
            hash_engine=hash_engine,
            dos_guard=dos_guard,
            legacy_adapter=legacy_adapter,
            migration=migration,
            audit=audit,
            key_prefix=security_config.api_key_prefix,
            full_scan_max_keys=guard_config.full_scan_max_keys,
        )

        logger.info(
            f"Building API key stack (prefix {security_config.api_key_prefix!r}, "
            f"{migration_config.workers} migration workers)"
        )

        return ApiKeyService(
            store=store,
            hash_engine=hash_engine,
            validator=validator,
            legacy_adapter=legacy_adapter,
            migration=migration,
            audit=audit,
            usage_recorder=usage_recorder,
            key_prefix=security_config.api_key_prefix,
            default_token_limit=limits_config.default_token_limit,
        )
