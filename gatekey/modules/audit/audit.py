"""
Security audit trail.

Events are written to the gatekey.security logger and kept in a capped
Redis list for later inspection. Auditing is fire-and-forget: a failing
audit backend is logged and never raised back into the caller.
"""

import json
import logging
import os
import secrets
import socket
import time
from datetime import UTC, datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("gatekey.security")

# Outcomes that warrant a louder severity
_HIGH_SEVERITY_OUTCOMES = {"FAILURE", "BLOCKED", "ERROR", "DENIED"}


class SecurityAudit:
    """Security event logger backed by Redis."""

    AUDIT_KEY = "security:audit"
    MAX_EVENTS = 10000

    def __init__(self, redis_client=None):
        """
        Initialize audit logger.

        Args:
            redis_client: Optional async Redis client; events are only logged without it
        """
        self.redis = redis_client
        self.session_id = secrets.token_hex(16)
        self.hostname = socket.gethostname()
        self.pid = os.getpid()

    @staticmethod
    def generate_event_id() -> str:
        return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"

    def _build_event(
        self, category: str, outcome: str, severity: str, details: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        return {
            "event_id": self.generate_event_id(),
            "timestamp": datetime.now(UTC).isoformat(),
            "category": category,
            "outcome": outcome,
            "severity": severity,
            "session_id": self.session_id,
            "hostname": self.hostname,
            "pid": self.pid,
            "details": details or {},
        }

    async def log_event(
        self,
        category: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ) -> Optional[str]:
        """
        Record a security event.

        Args:
            category: Event category (AUTHENTICATION, DATA_MIGRATION, HASH_MIGRATION, ...)
            outcome: SUCCESS, FAILURE, BLOCKED, ERROR, ...
            details: Event data; must never contain plaintext secrets
            severity: Overrides the severity derived from the outcome

        Returns:
            Event id, or None if the event could not be built
        """
        try:
            severity = severity or ("HIGH" if outcome in _HIGH_SEVERITY_OUTCOMES else "INFO")
            event = self._build_event(category, outcome, severity, details)
            payload = json.dumps(event, default=str)
        except Exception as e:
            logger.warning(f"Failed to build audit event {category}/{outcome}: {e}")
            return None

        level = logging.WARNING if severity in ("HIGH", "CRITICAL") else logging.INFO
        security_logger.log(level, f"{category} {outcome}: {payload}")

        if self.redis is not None:
            try:
                await self.redis.lpush(self.AUDIT_KEY, payload)
                # Keep last 10000 events
                await self.redis.ltrim(self.AUDIT_KEY, 0, self.MAX_EVENTS - 1)
            except Exception as e:
                logger.warning(f"Failed to persist audit event {event['event_id']}: {e}")

        return event["event_id"]

    async def log_authentication(
        self, action: str, result: str, details: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """Record an authentication event (action e.g. API_KEY_AUTH)."""
        return await self.log_event("AUTHENTICATION", result, {"action": action, **(details or {})})

    async def log_security_violation(
        self,
        violation_type: str,
        policy: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Record a policy violation such as a hash collision."""
        return await self.log_event(
            "SECURITY_VIOLATION",
            action,
            {"type": violation_type, "policy": policy, **(details or {})},
            severity="HIGH",
        )

    async def recent_events(self, limit: int = 100) -> list:
        """Most recent persisted events, newest first."""
        if self.redis is None:
            return []
        rows = await self.redis.lrange(self.AUDIT_KEY, 0, limit - 1)
        return [json.loads(row) for row in rows]
