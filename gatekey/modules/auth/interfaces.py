"""Authentication interfaces following Black Box Design principles."""
from typing import Any, Dict, Optional, Protocol

from ..api.models import TokenUsage


class SecurityAuditor(Protocol):
    """Protocol for security event sinks. Implementations must never raise."""

    async def log_event(
        self,
        category: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ) -> Optional[str]:
        ...

    async def log_security_violation(
        self,
        violation_type: str,
        policy: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        ...


class UserDirectory(Protocol):
    """Protocol for the legacy user service consulted for pre-ownership keys."""

    async def is_user_active(self, user_id: str) -> bool:
        """
        Check whether a legacy user account is active.

        Raising is treated as "unavailable" and fails validation closed.
        """
        ...


class UsageRecorder(Protocol):
    """Protocol for usage/cost accounting owned by the surrounding gateway."""

    async def record(
        self,
        key_id: str,
        usage: TokenUsage,
        model: str,
        account_id: Optional[str] = None,
    ) -> None:
        ...
