"""
Gatekey shared data models.

These models define the structure of all data passed between
components in the Gatekey system.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

# Enums


class AuthOutcome(str, Enum):
    """Terminal outcome of API key validation."""

    VALID = "valid"
    FORMAT_INVALID = "format_invalid"
    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    EXPIRED = "expired"
    AUTHORIZATION_FAILED = "authorization_failed"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INTERNAL_ERROR = "internal_error"


class KeyPermission(str, Enum):
    """Upstream provider families a key may be used for."""

    ALL = "all"
    CLAUDE = "claude"
    GEMINI = "gemini"
    OPENAI = "openai"


class OwnerType(str, Enum):
    """Kinds of principals that can own a key."""

    USER = "user"
    ADMIN = "admin"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _clean_str_list(value) -> List[str]:
    if value is None:
        return []
    return [str(item).strip() for item in value if str(item).strip()]


# Persisted record


class ApiKeyRecord(BaseModel):
    """
    Persisted API key.

    secret_hash is the only form in which the issued secret is kept.
    user_id/user_username are the pre-ownership schema and are retained
    for backward compatibility; LegacyDataAdapter converges them into
    owner/owner_type.
    """

    id: str = Field(..., min_length=1)
    secret_hash: str = Field(..., min_length=1)

    name: str = "Unnamed Key"
    description: str = ""

    token_limit: int = Field(default=0, ge=0)
    concurrency_limit: int = Field(default=0, ge=0)
    rate_limit_window: int = Field(default=0, ge=0, description="Window length in minutes")
    rate_limit_requests: int = Field(default=0, ge=0)
    daily_cost_limit: float = Field(default=0.0, ge=0)

    permissions: KeyPermission = KeyPermission.ALL
    enable_model_restriction: bool = False
    restricted_models: List[str] = Field(default_factory=list)
    enable_client_restriction: bool = False
    allowed_clients: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    is_active: bool = True
    expires_at: Optional[datetime] = None

    owner: Optional[str] = None
    owner_type: Optional[str] = None

    # Legacy ownership fields
    user_id: Optional[str] = None
    user_username: Optional[str] = None
    created_by: str = "admin"

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @field_validator("restricted_models", "allowed_clients", "tags", mode="before")
    @classmethod
    def clean_lists(cls, v):
        return _clean_str_list(v)

    @field_validator("owner", "owner_type", "user_id", "user_username", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        # Older rows persisted missing values as empty strings
        if v == "":
            return None
        return v

    @property
    def has_legacy_identity(self) -> bool:
        return bool(self.user_id or self.user_username)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return now > expires_at

    def to_view(self) -> "ApiKeyView":
        return ApiKeyView(**self.model_dump(exclude={"secret_hash"}))


# Response Models (read-only views)


class ApiKeyView(BaseModel):
    """Read-only view of an API key. Never carries the stored hash."""

    model_config = {"frozen": True}

    id: str
    name: str
    description: str = ""
    token_limit: int = 0
    concurrency_limit: int = 0
    rate_limit_window: int = 0
    rate_limit_requests: int = 0
    daily_cost_limit: float = 0.0
    permissions: KeyPermission = KeyPermission.ALL
    enable_model_restriction: bool = False
    restricted_models: List[str] = Field(default_factory=list)
    enable_client_restriction: bool = False
    allowed_clients: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_active: bool = True
    expires_at: Optional[datetime] = None
    owner: Optional[str] = None
    owner_type: Optional[str] = None
    user_id: Optional[str] = None
    user_username: Optional[str] = None
    created_by: str = "admin"
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


class GeneratedKey(BaseModel):
    """Result of key issuance. api_key is the only copy of the plaintext secret."""

    id: str
    api_key: str
    view: ApiKeyView


# Request Models (API Input)


class GenerateKeyRequest(BaseModel):
    """Options for issuing a new API key."""

    name: str = Field(default="Unnamed Key", min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    token_limit: Optional[int] = Field(
        default=None, ge=0, description="Falls back to the configured default"
    )
    concurrency_limit: int = Field(default=0, ge=0)
    rate_limit_window: int = Field(default=0, ge=0)
    rate_limit_requests: int = Field(default=0, ge=0)
    daily_cost_limit: float = Field(default=0.0, ge=0)
    permissions: KeyPermission = KeyPermission.ALL
    enable_model_restriction: bool = False
    restricted_models: List[str] = Field(default_factory=list)
    enable_client_restriction: bool = False
    allowed_clients: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_active: bool = True
    expires_at: Optional[datetime] = None
    owner: Optional[str] = None
    owner_type: Optional[OwnerType] = None


class ApiKeyUpdate(BaseModel):
    """
    Patch for an existing key.

    Only these fields may be changed after issuance; the hash, ownership
    and timestamps are managed by the service itself.
    """

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    token_limit: Optional[int] = Field(default=None, ge=0)
    concurrency_limit: Optional[int] = Field(default=None, ge=0)
    rate_limit_window: Optional[int] = Field(default=None, ge=0)
    rate_limit_requests: Optional[int] = Field(default=None, ge=0)
    daily_cost_limit: Optional[float] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    permissions: Optional[KeyPermission] = None
    expires_at: Optional[datetime] = None
    enable_model_restriction: Optional[bool] = None
    restricted_models: Optional[List[str]] = None
    enable_client_restriction: Optional[bool] = None
    allowed_clients: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class TokenUsage(BaseModel):
    """Token counts reported by the relay for a single request."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_create_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_create_tokens
            + self.cache_read_tokens
        )
