"""
Authentication Module - Black Box Interface

Purpose: Issue and validate API keys
Interface: ApiKeyService (generate_key, validate, update, delete, list_all, record_usage)
Hidden: Hash formats, index lookups, legacy migration, DoS protection

Callers only ever see AuthResult outcomes and ApiKeyView records; the
stored hash never leaves this module.
"""

from .errors import ApiKeyNotFoundError, AuthorizationFailedError, GatekeyError
from .factory import AuthFactory
from .hashing import HashEngine
from .service import ApiKeyService
from .validator import AuthResult

__all__ = [
    "ApiKeyService",
    "AuthFactory",
    "AuthResult",
    "HashEngine",
    "GatekeyError",
    "ApiKeyNotFoundError",
    "AuthorizationFailedError",
]
