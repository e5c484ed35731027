"""
Legacy ownership normalization.

Keys issued before owner/owner_type existed carry user_id/user_username
instead. Those fields are only promoted to canonical ownership after they
pass validation; anything suspicious fails the whole authentication.
"""

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Optional, Tuple

from ..api.models import ApiKeyRecord, AuthOutcome, OwnerType
from .errors import AuthorizationFailedError
from .interfaces import SecurityAuditor, UserDirectory

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("gatekey.security")

MAX_IDENTIFIER_LENGTH = 100
RESERVED_NAMES = {"admin", "root", "system"}

SUSPICIOUS_PATTERNS = [
    re.compile(r"[<>\"';&|`$(){}\[\]]"),  # markup / shell injection characters
    re.compile(r"\.\."),  # path traversal
    re.compile(r"//"),  # URL schemes
]


@dataclass
class NormalizationContext:
    """Where a record is being normalized from (api_validation, bulk_listing, ...)."""

    source: str = "api_validation"


@dataclass
class NormalizationResult:
    record: ApiKeyRecord
    changed: bool = False
    migrated_from_legacy: bool = False


def check_identifier(identifier) -> Optional[str]:
    """
    Validate a legacy identifier.

    Returns:
        None if acceptable, otherwise the rejection reason
    """
    if not isinstance(identifier, str):
        return "Invalid userId format or length"
    if not 1 <= len(identifier) <= MAX_IDENTIFIER_LENGTH:
        return "Invalid userId format or length"
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(identifier):
            return "Suspicious characters in userId"
    if identifier.lower() in RESERVED_NAMES:
        return "Reserved privileged name in userId"
    return None


class LegacyDataAdapter:
    """Authorizes and normalizes legacy ownership fields."""

    def __init__(
        self,
        audit: Optional[SecurityAuditor] = None,
        user_directory: Optional[UserDirectory] = None,
    ):
        """
        Initialize adapter.

        Args:
            audit: Security audit sink
            user_directory: Legacy user service; when absent, user activity isn't checked
        """
        self.audit = audit
        self.user_directory = user_directory

    @staticmethod
    def is_legacy(record: ApiKeyRecord) -> bool:
        return record.has_legacy_identity and not record.owner

    def validate_legacy_migration(
        self, record: ApiKeyRecord, context: NormalizationContext
    ) -> Tuple[bool, str]:
        """
        Decide whether legacy identity may become canonical ownership.

        Returns:
            Tuple of (authorized, reason)
        """
        for identifier in (record.user_id, record.user_username):
            if identifier is None:
                continue
            reason = check_identifier(identifier)
            if reason:
                return False, reason

        if record.user_id and record.user_username and record.user_id != record.user_username:
            logger.debug(
                f"Username mismatch in migration: userId={record.user_id}, "
                f"userUsername={record.user_username}"
            )

        if context.source == "bulk_operation":
            security_logger.warning(f"Bulk migration detected for userId: {record.user_id}")

        return True, "Migration validation passed"

    @staticmethod
    def _conflicting_owner(record: ApiKeyRecord) -> bool:
        if not (record.owner and record.has_legacy_identity):
            return False
        return record.owner not in (record.user_id, record.user_username)

    async def _audit(self, outcome: str, details: dict) -> None:
        if self.audit is not None:
            await self.audit.log_event("DATA_MIGRATION", outcome, details)

    async def normalize(
        self, record: ApiKeyRecord, context: Optional[NormalizationContext] = None
    ) -> NormalizationResult:
        """
        Converge legacy ownership fields into owner/owner_type.

        The input record is not mutated.

        Raises:
            AuthorizationFailedError: Legacy data is suspicious or conflicts with the owner
        """
        context = context or NormalizationContext()
        timestamp = datetime.now(UTC).isoformat()

        if self._conflicting_owner(record):
            reason = "Key already has different owner - potential migration abuse"
            security_logger.warning(
                f"Unauthorized data migration blocked for key {record.id}: {reason}"
            )
            await self._audit(
                "BLOCKED",
                {
                    "key_id": record.id,
                    "user_id": record.user_id,
                    "owner": record.owner,
                    "reason": reason,
                    "context": context.source,
                    "timestamp": timestamp,
                },
            )
            raise AuthorizationFailedError(record.id, reason)

        updates = {}
        migrated = False

        if self.is_legacy(record):
            authorized, reason = self.validate_legacy_migration(record, context)
            if not authorized:
                security_logger.warning(
                    f"Unauthorized data migration blocked for key {record.id}: {reason}"
                )
                await self._audit(
                    "BLOCKED",
                    {
                        "key_id": record.id,
                        "user_id": record.user_id,
                        "reason": reason,
                        "context": context.source,
                        "timestamp": timestamp,
                    },
                )
                raise AuthorizationFailedError(record.id, reason)

            updates["owner"] = record.user_username or record.user_id
            updates["owner_type"] = OwnerType.USER.value
            migrated = True

            security_logger.info(
                f"Authorized legacy migration for key {record.id}: "
                f"userId({record.user_id}) -> owner({updates['owner']})"
            )
            await self._audit(
                "SUCCESS",
                {
                    "key_id": record.id,
                    "from_user_id": record.user_id,
                    "to_owner": updates["owner"],
                    "context": context.source,
                    "timestamp": timestamp,
                },
            )

        # Handle legacy created_by values
        if record.created_by == "user" and not record.owner_type and "owner_type" not in updates:
            updates["owner_type"] = OwnerType.USER.value

        if not updates:
            return NormalizationResult(record=record)

        return NormalizationResult(
            record=record.model_copy(update=updates),
            changed=True,
            migrated_from_legacy=migrated,
        )

    async def verify_legacy_user(
        self, record: ApiKeyRecord
    ) -> Tuple[Optional[AuthOutcome], Optional[str]]:
        """
        Check the legacy user behind a key is still active.

        Fails closed: an unreachable user directory rejects the key.

        Returns:
            Tuple of (failure outcome or None, error)
        """
        if not record.user_id or self.user_directory is None:
            return None, None

        try:
            active = await self.user_directory.is_user_active(record.user_id)
        except Exception as e:
            security_logger.warning(f"Legacy user validation failed for {record.user_id}: {e}")
            return AuthOutcome.AUTHORIZATION_FAILED, "User validation service unavailable"

        if not active:
            return AuthOutcome.DISABLED, "User account is disabled"
        return None, None
