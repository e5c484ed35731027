"""
Audit Module - Black Box Interface

Purpose: Record security events for later review
Interface: log_event(), log_authentication(), log_security_violation()
Hidden: Event format, storage backend, retention

Auditing never raises back into the caller.
"""

from .audit import SecurityAudit

__all__ = ["SecurityAudit"]
