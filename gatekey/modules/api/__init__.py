"""
API Models Module - Black Box Interface

Purpose: Shared data contracts between modules and the gateway
Interface: Pydantic models for records, views, requests and outcomes
Hidden: Serialization details of the persisted form

Every module exchanges these types instead of raw storage rows.
"""

from .models import (
    ApiKeyRecord,
    ApiKeyUpdate,
    ApiKeyView,
    AuthOutcome,
    GenerateKeyRequest,
    GeneratedKey,
    KeyPermission,
    OwnerType,
    TokenUsage,
)

__all__ = [
    "ApiKeyRecord",
    "ApiKeyUpdate",
    "ApiKeyView",
    "AuthOutcome",
    "GenerateKeyRequest",
    "GeneratedKey",
    "KeyPermission",
    "OwnerType",
    "TokenUsage",
]
