"""
API key service facade.

This module provides:
- Key issuance, patching, deletion and listing
- Validation (delegated to the Validator pipeline)
- Usage touch-points for the surrounding gateway
- Lifecycle of the background migration worker
"""

import logging
import secrets
import uuid
from contextlib import nullcontext
from typing import List, Optional

from ..api.models import (
    ApiKeyRecord,
    ApiKeyUpdate,
    ApiKeyView,
    GeneratedKey,
    GenerateKeyRequest,
    OwnerType,
    TokenUsage,
    utcnow,
)
from ..lock.lock import LockUnavailableError
from ..storage.keystore import KeyStore
from .collision import CollisionDetector, HashCollision
from .errors import ApiKeyNotFoundError, AuthorizationFailedError
from .hashing import HashEngine
from .interfaces import SecurityAuditor, UsageRecorder
from .legacy import LegacyDataAdapter, NormalizationContext
from .migration import MigrationCoordinator
from .validator import FULL_SCAN_SOURCE, AuthResult, Validator

logger = logging.getLogger(__name__)

SECRET_BYTES = 32


class ApiKeyService:
    """
    Public interface of the authentication module.

    Everything behind it (hash formats, index layout, migration, DoS
    protection) can change without touching callers.
    """

    def __init__(
        self,
        store: KeyStore,
        hash_engine: HashEngine,
        validator: Validator,
        legacy_adapter: LegacyDataAdapter,
        migration: Optional[MigrationCoordinator] = None,
        audit: Optional[SecurityAuditor] = None,
        usage_recorder: Optional[UsageRecorder] = None,
        key_prefix: str = "sk-",
        default_token_limit: int = 0,
    ):
        self.store = store
        self.hash_engine = hash_engine
        self.validator = validator
        self.legacy_adapter = legacy_adapter
        self.migration = migration
        self.audit = audit
        self.usage_recorder = usage_recorder
        self.key_prefix = key_prefix
        self.default_token_limit = default_token_limit
        self.collision_detector = CollisionDetector(store, audit)

    async def start(self) -> None:
        if self.migration is not None:
            await self.migration.start()

    async def stop(self) -> None:
        if self.migration is not None:
            await self.migration.stop()

    async def generate_key(self, request: Optional[GenerateKeyRequest] = None) -> GeneratedKey:
        """
        Issue a new API key.

        The plaintext secret is returned exactly once and never persisted.

        Args:
            request: Key options; defaults apply when omitted

        Returns:
            GeneratedKey carrying the secret and a view of the stored record
        """
        request = request or GenerateKeyRequest()
        key_id = str(uuid.uuid4())
        api_key = f"{self.key_prefix}{secrets.token_hex(SECRET_BYTES)}"
        secret_hash = self.hash_engine.hash(api_key)

        fields = request.model_dump(exclude={"token_limit", "owner_type"})
        token_limit = request.token_limit
        if token_limit is None:
            token_limit = self.default_token_limit
        owner_type = request.owner_type.value if request.owner_type else None

        record = ApiKeyRecord(
            id=key_id,
            secret_hash=secret_hash,
            token_limit=token_limit,
            owner_type=owner_type,
            created_by=owner_type or OwnerType.ADMIN.value,
            **fields,
        )
        await self.store.set(key_id, record, new_index_hash=secret_hash)

        logger.info(f"Generated new API key: {request.name} ({key_id})")
        return GeneratedKey(id=key_id, api_key=api_key, view=record.to_view())

    async def validate(self, secret: str, source: str = FULL_SCAN_SOURCE) -> AuthResult:
        """Validate a presented API key. Never raises."""
        return await self.validator.validate(secret, source)

    def _record_lock(self, key_id: str, max_retries: Optional[int] = None):
        """Serialize a read-modify-write with background migration of the same record."""
        if self.migration is None:
            return nullcontext()
        return self.migration.lock.hold(
            self.migration.lock_resource(key_id),
            ttl_ms=self.migration.lock_ttl_ms,
            max_retries=max_retries or self.migration.lock_max_retries,
            retry_delay_ms=self.migration.lock_retry_delay_ms,
        )

    async def _require(self, key_id: str) -> ApiKeyRecord:
        record = await self.store.get(key_id)
        if record is None:
            raise ApiKeyNotFoundError(key_id)
        return record

    async def update(self, key_id: str, patch: ApiKeyUpdate) -> ApiKeyView:
        """
        Apply a whitelisted patch to a key.

        Raises:
            ApiKeyNotFoundError: No key with this id
            LockUnavailableError: The record stayed locked by a migration
        """
        changes = patch.model_dump(exclude_unset=True)
        changes["updated_at"] = utcnow()

        async with self._record_lock(key_id):
            record = await self._require(key_id)
            updated = ApiKeyRecord.model_validate({**record.model_dump(), **changes})
            if not await self.store.replace(key_id, updated):
                raise ApiKeyNotFoundError(key_id)

        logger.info(f"Updated API key: {key_id} ({', '.join(sorted(changes))})")
        return updated.to_view()

    async def delete(self, key_id: str) -> None:
        """
        Delete a key and its index entry.

        Raises:
            ApiKeyNotFoundError: No key with this id
            LockUnavailableError: The record stayed locked by a migration
        """
        async with self._record_lock(key_id):
            deleted = await self.store.delete(key_id)
        if not deleted:
            raise ApiKeyNotFoundError(key_id)
        logger.info(f"Deleted API key: {key_id}")

    async def list_all(self) -> List[ApiKeyView]:
        """All keys with ownership normalized; keys that fail normalization are left out."""
        context = NormalizationContext(source="bulk_listing")
        views = []
        for record in await self.store.list_all():
            try:
                normalized = await self.legacy_adapter.normalize(record, context)
            except AuthorizationFailedError as e:
                logger.warning(f"Skipping API key {record.id} in listing: {e.reason}")
                continue
            views.append(normalized.record.to_view())
        return views

    async def get_api_key(
        self, key_id: str, user_id: Optional[str] = None
    ) -> Optional[ApiKeyView]:
        """
        Look up a key by id, optionally restricted to one user's keys.

        Returns:
            The key view, or None if missing, untrusted, or owned by someone else
        """
        record = await self.store.get(key_id)
        if record is None:
            return None

        try:
            normalized = await self.legacy_adapter.normalize(
                record, NormalizationContext(source="individual_lookup")
            )
        except AuthorizationFailedError as e:
            logger.warning(f"Data migration failed for key {key_id}: {e.reason}")
            return None

        record = normalized.record
        if user_id and not self._owned_by_user(record, user_id):
            return None
        return record.to_view()

    @staticmethod
    def _owned_by_user(record: ApiKeyRecord, user_id: str) -> bool:
        if record.user_id == user_id:
            return True
        return record.owner == user_id and record.owner_type == OwnerType.USER.value

    async def get_user_api_keys(self, user_id: str) -> List[ApiKeyView]:
        """Keys owned by a user, under either the legacy or the current ownership fields."""
        return [
            view
            for view in await self.list_all()
            if view.user_id == user_id
            or (view.owner == user_id and view.owner_type == OwnerType.USER.value)
        ]

    async def disable_user_api_keys(self, user_id: str) -> int:
        """Deactivate every active key a user owns. Returns the number disabled."""
        disabled = 0
        for view in await self.get_user_api_keys(user_id):
            if view.is_active:
                await self.update(view.id, ApiKeyUpdate(is_active=False))
                disabled += 1

        logger.info(f"Disabled {disabled} API keys for user: {user_id}")
        return disabled

    async def cleanup_expired_keys(self) -> int:
        """Deactivate expired keys (they are kept, not deleted). Returns the number disabled."""
        try:
            records = await self.store.list_all()
        except Exception as e:
            logger.error(f"Failed to cleanup expired keys: {e}")
            return 0

        now = utcnow()
        cleaned = 0
        for record in records:
            if record.is_active and record.is_expired(now):
                try:
                    await self.update(record.id, ApiKeyUpdate(is_active=False))
                except ApiKeyNotFoundError:
                    continue
                logger.info(f"API Key {record.id} ({record.name}) has expired and been disabled")
                cleaned += 1

        if cleaned:
            logger.info(f"Disabled {cleaned} expired API keys")
        return cleaned

    async def detect_collisions(self) -> List[HashCollision]:
        return await self.collision_detector.scan()

    async def record_usage(
        self,
        key_id: str,
        usage: TokenUsage,
        model: str = "unknown",
        account_id: Optional[str] = None,
    ) -> None:
        """
        Record a completed request against a key.

        Forwards to the usage recorder and touches last_used_at. The touch is
        best effort: it is skipped while a migration holds the record, and it
        never keeps the usage event from reaching the recorder. Accounting
        failures are logged; they never fail the request being accounted.
        """
        await self._touch_last_used(key_id)

        if self.usage_recorder is None:
            return
        try:
            await self.usage_recorder.record(key_id, usage, model, account_id)
            logger.debug(f"Recorded usage: {key_id} - Model: {model}, Tokens: {usage.total}")
        except Exception as e:
            logger.error(f"Failed to record usage for {key_id}: {e}")

    async def _touch_last_used(self, key_id: str) -> None:
        try:
            async with self._record_lock(key_id, max_retries=1):
                record = await self.store.get(key_id)
                if record is not None:
                    touched = record.model_copy(update={"last_used_at": utcnow()})
                    await self.store.replace(key_id, touched)
        except LockUnavailableError:
            logger.debug(f"Skipping last_used_at for {key_id} - record is locked")
        except Exception as e:
            logger.warning(f"Failed to update last_used_at for {key_id}: {e}")
