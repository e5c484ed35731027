"""
API key validation pipeline.

Lookup is tiered so the common path never scans:
1. prefix check (no store access)
2. current-format hash index lookup
3. legacy-format hash index lookup (schedules a background upgrade)
4. DoS-guarded full scan, capped, as a last resort
Then ownership normalization, activity and expiry checks. Every failure
is reported as an invalid credential; nothing fails open.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from ..api.models import ApiKeyRecord, ApiKeyView, AuthOutcome
from ..storage.keystore import KeyStore
from .dos_guard import DEFAULT_SOURCE, DoSGuard, GuardDecision
from .errors import AuthorizationFailedError
from .hashing import HashEngine
from .interfaces import SecurityAuditor
from .legacy import LegacyDataAdapter, NormalizationContext

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("gatekey.security")

FULL_SCAN_SOURCE = "api_key_verification"


@dataclass
class AuthResult:
    """Standardized authentication result."""
    outcome: AuthOutcome
    view: Optional[ApiKeyView] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is AuthOutcome.VALID


class MigrationScheduler(Protocol):
    """Anything that accepts fire-and-forget hash upgrade requests."""

    def submit(self, key_id: str, secret: str, observed_hash: str) -> bool:
        ...

    def submit_ownership(
        self, key_id: str, owner: Optional[str], owner_type: Optional[str]
    ) -> bool:
        ...


def fingerprint(secret: str) -> str:
    """Short non-reversible tag of an attempted secret for audit records."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


class Validator:
    """Orchestrates lookup and produces the authentication decision."""

    def __init__(
        self,
        store: KeyStore,
        hash_engine: HashEngine,
        dos_guard: DoSGuard,
        legacy_adapter: LegacyDataAdapter,
        migration: Optional[MigrationScheduler] = None,
        audit: Optional[SecurityAuditor] = None,
        key_prefix: str = "sk-",
        full_scan_max_keys: int = 1000,
    ):
        """
        Initialize validator.

        Args:
            store: API key store
            hash_engine: Versioned hash engine
            dos_guard: Guard for the full-scan fallback
            legacy_adapter: Legacy ownership normalizer
            migration: Receiver of background hash upgrades
            audit: Security audit sink
            key_prefix: Prefix every issued secret carries
            full_scan_max_keys: Hard cap on records verified by one full scan
        """
        self.store = store
        self.hash_engine = hash_engine
        self.dos_guard = dos_guard
        self.legacy_adapter = legacy_adapter
        self.migration = migration
        self.audit = audit
        self.key_prefix = key_prefix
        self.full_scan_max_keys = full_scan_max_keys

    async def _audit(self, result: str, details: dict) -> None:
        if self.audit is not None:
            await self.audit.log_event(
                "AUTHENTICATION", result, {"action": "API_KEY_AUTH", **details}
            )

    def _schedule_migration(self, record: ApiKeyRecord, secret: str) -> None:
        if self.migration is None or self.hash_engine.is_current(record.secret_hash):
            return
        try:
            if self.migration.submit(record.id, secret, record.secret_hash):
                logger.info(f"Legacy API key hash found, migration triggered: {record.id}")
        except Exception as e:
            # Scheduling can never fail the request that found the key
            logger.warning(f"Could not schedule hash migration for {record.id}: {e}")

    async def validate(self, secret: str, source: str = FULL_SCAN_SOURCE) -> AuthResult:
        """
        Validate an API key.

        Args:
            secret: Presented API key
            source: Identifier used to rate limit the full-scan fallback (e.g. client IP)

        Returns:
            AuthResult; only AuthOutcome.VALID carries a view
        """
        if not secret or not isinstance(secret, str) or not secret.startswith(self.key_prefix):
            return AuthResult(AuthOutcome.FORMAT_INVALID, error="Invalid API key format")

        try:
            record, denial = await self._lookup(secret, source or DEFAULT_SOURCE)

            if denial is not None:
                return denial

            if record is None:
                attempt = fingerprint(secret)
                security_logger.warning(f"Unknown API key validation attempt: {attempt}...")
                await self._audit("FAILURE", {"reason": "api_key_not_found", "hashed_key": attempt})
                return AuthResult(AuthOutcome.NOT_FOUND, error="API key not found")

            return await self._authorize(record)
        except Exception as e:
            logger.exception(f"API key validation error: {e}")
            await self._audit("ERROR", {"error": str(e), "error_type": "validation_error"})
            return AuthResult(AuthOutcome.INTERNAL_ERROR, error="Internal validation error")

    async def _lookup(
        self, secret: str, source: str
    ) -> Tuple[Optional[ApiKeyRecord], Optional[AuthResult]]:
        record = await self.store.find_by_hash(self.hash_engine.hash(secret))
        if record is not None:
            return record, None

        for legacy_hash in self.hash_engine.legacy_candidates(secret):
            record = await self.store.find_by_hash(legacy_hash)
            if record is not None:
                self._schedule_migration(record, secret)
                return record, None

        return await self._full_scan(secret, source)

    async def _full_scan(
        self, secret: str, source: str
    ) -> Tuple[Optional[ApiKeyRecord], Optional[AuthResult]]:
        decision = self.dos_guard.check(source)

        if decision is GuardDecision.CIRCUIT_OPEN:
            security_logger.warning("Circuit breaker is open - blocking full API key scan")
            return None, AuthResult(
                AuthOutcome.SERVICE_UNAVAILABLE,
                error="API key verification temporarily unavailable",
            )

        if decision is GuardDecision.RATE_LIMITED:
            self.dos_guard.record_failure(source)
            await self._audit("BLOCKED", {"reason": "full_scan_rate_limited", "source": source})
            return None, AuthResult(
                AuthOutcome.SERVICE_UNAVAILABLE, error="Too many failed API key lookups"
            )

        logger.info("Performing full API key scan - last resort verification")
        try:
            records = await self.store.list_all()
        except Exception as e:
            logger.error(f"Full API key scan failed: {e}")
            self.dos_guard.record_failure(source)
            return None, None

        if len(records) > self.full_scan_max_keys:
            security_logger.warning(
                f"Full scan limited to {self.full_scan_max_keys} keys for DoS protection"
            )

        for record in records[: self.full_scan_max_keys]:
            if self.hash_engine.verify(secret, record.secret_hash):
                logger.info(f"API key found through hash verification: {record.id}")
                self._schedule_migration(record, secret)
                return record, None

        self.dos_guard.record_failure(source)
        return None, None

    async def _authorize(self, record: ApiKeyRecord) -> AuthResult:
        try:
            normalized = await self.legacy_adapter.normalize(
                record, NormalizationContext(source="api_validation")
            )
        except AuthorizationFailedError as e:
            security_logger.warning(f"Data migration failed for key {record.id}: {e.reason}")
            return AuthResult(
                AuthOutcome.AUTHORIZATION_FAILED, error="Data migration security check failed"
            )

        record = normalized.record
        if normalized.changed:
            await self._persist_normalized(record)

        outcome, error = await self.legacy_adapter.verify_legacy_user(record)
        if outcome is not None:
            return AuthResult(outcome, error=error)

        if not record.is_active:
            security_logger.warning(f"Disabled API key validation attempt: {record.id}")
            return AuthResult(AuthOutcome.DISABLED, error="API key is disabled")

        if record.is_expired():
            security_logger.warning(f"Expired API key validation attempt: {record.id}")
            return AuthResult(AuthOutcome.EXPIRED, error="API key has expired")

        logger.debug(f"API key validated successfully: {record.id}")
        await self._audit("SUCCESS", {"key_id": record.id, "key_name": record.name})
        return AuthResult(AuthOutcome.VALID, view=record.to_view())

    async def _persist_normalized(self, record: ApiKeyRecord) -> None:
        try:
            if self.migration is not None:
                # Written under the same lease as hash upgrades so neither clobbers the other
                self.migration.submit_ownership(record.id, record.owner, record.owner_type)
                return

            current = await self.store.get(record.id)
            if current is None:
                return
            merged = current.model_copy(
                update={"owner": record.owner, "owner_type": record.owner_type}
            )
            await self.store.replace(record.id, merged)
        except Exception as e:
            logger.warning(f"Failed to persist normalized ownership for {record.id}: {e}")
