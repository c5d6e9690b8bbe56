"""
Domain records and input schemas.

Records (APIKey, UsageLogEntry, OwnerSettings) are plain dataclasses owned by
the repository layer. Input from account holders (CreateKeyOptions,
KeyUpdate) is validated with pydantic before it reaches the store.

All timestamps are naive UTC datetimes.
"""
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

WILDCARD = "*"


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive input is assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Permission(str, Enum):
    """Capability tags a key can be granted."""
    CREATE_CONTENT = "create-content"
    READ_CONTENT = "read-content"
    UPDATE_CONTENT = "update-content"
    DELETE_CONTENT = "delete-content"
    READ_ACCOUNTS = "read-accounts"
    READ_ANALYTICS = "read-analytics"
    UPLOAD_MEDIA = "upload-media"


DEFAULT_PERMISSIONS = [Permission.CREATE_CONTENT, Permission.READ_CONTENT]


class KeyStatus(str, Enum):
    """Key lifecycle status. REVOKED is terminal."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    REVOKED = "revoked"


class RateLimitTier(str, Enum):
    """Named monthly request budgets."""
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


@dataclass
class APIKey:
    """A stored API key. The plaintext token is never part of the record."""
    key_id: str
    owner_id: str
    name: str
    key_prefix: str
    hashed_secret: str
    permissions: List[Permission]
    status: KeyStatus = KeyStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    rate_limit_tier: RateLimitTier = RateLimitTier.STANDARD
    usage_count: int = 0
    monthly_usage_count: int = 0
    monthly_usage_reset_date: datetime = field(default_factory=utcnow)
    description: Optional[str] = None
    allowed_origins: Optional[List[str]] = None
    ip_whitelist: Optional[List[str]] = None
    allowed_resource_scopes: Optional[List[str]] = None
    last_used_at: Optional[datetime] = None
    last_used_ip: Optional[str] = None
    last_used_agent: Optional[str] = None

    @property
    def is_live(self) -> bool:
        """Counts toward the owner's key limit."""
        return self.status != KeyStatus.REVOKED

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def has_permission(self, permission: str) -> bool:
        return permission in {p.value for p in self.permissions}

    def to_public_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary safe to show the owner (no digest)."""
        return {
            "key_id": self.key_id,
            "name": self.name,
            "description": self.description,
            "key_prefix": self.key_prefix,
            "permissions": [p.value for p in self.permissions],
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "rate_limit_tier": self.rate_limit_tier.value,
            "usage_count": self.usage_count,
            "monthly_usage_count": self.monthly_usage_count,
            "monthly_usage_reset_date": self.monthly_usage_reset_date.isoformat(),
            "allowed_origins": self.allowed_origins,
            "ip_whitelist": self.ip_whitelist,
            "allowed_resource_scopes": self.allowed_resource_scopes,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass
class UsageCounters:
    """Counter values after an atomic usage increment."""
    usage_count: int
    monthly_usage_count: int
    monthly_usage_reset_date: datetime


@dataclass
class CallMetadata:
    """What the caller did with an authorized key."""
    endpoint: str
    method: str
    status_code: int
    response_time_ms: Optional[float] = None
    caller_ip: Optional[str] = None
    caller_agent: Optional[str] = None
    request_size: Optional[int] = None
    response_size: Optional[int] = None
    error_message: Optional[str] = None


@dataclass
class UsageLogEntry:
    """Append-only usage record. key_id is a back-reference, not ownership."""
    key_id: str
    owner_id: str
    endpoint: str
    method: str
    status_code: int
    timestamp: datetime = field(default_factory=utcnow)
    response_time_ms: Optional[float] = None
    caller_ip: Optional[str] = None
    caller_agent: Optional[str] = None
    request_size: Optional[int] = None
    response_size: Optional[int] = None
    error_message: Optional[str] = None

    @classmethod
    def from_call(cls, owner_id: str, key_id: str, call: CallMetadata, timestamp: datetime) -> "UsageLogEntry":
        return cls(
            key_id=key_id,
            owner_id=owner_id,
            endpoint=call.endpoint,
            method=call.method.upper(),
            status_code=call.status_code,
            timestamp=timestamp,
            response_time_ms=call.response_time_ms,
            caller_ip=call.caller_ip,
            caller_agent=call.caller_agent,
            request_size=call.request_size,
            response_size=call.response_size,
            error_message=call.error_message,
        )


@dataclass
class OwnerSettings:
    """Per-tenant key policy."""
    max_keys_allowed: int
    default_key_expiration: str
    enable_usage_logging: bool


# ---------------------------------------------------------------------------
# Input schemas
# ---------------------------------------------------------------------------


def _validate_scopes(v: Optional[List[str]]) -> Optional[List[str]]:
    if v is None:
        return None
    cleaned = []
    for pattern in v:
        pattern = pattern.strip()
        if not pattern:
            raise ValueError("Resource scope patterns cannot be empty")
        if WILDCARD in pattern[:-1]:
            raise ValueError(f"Wildcard is only allowed at the end of a scope pattern: {pattern}")
        cleaned.append(pattern)
    return cleaned


def _validate_ips(v: Optional[List[str]]) -> Optional[List[str]]:
    if v is None:
        return None
    for entry in v:
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError:
            raise ValueError(f"Invalid IP address or network: {entry}")
    return v


def _validate_origins(v: Optional[List[str]]) -> Optional[List[str]]:
    if v is None:
        return None
    for origin in v:
        if not origin.startswith(("http://", "https://")):
            raise ValueError(f"Origin must be an http(s) URL: {origin}")
    return v


class CreateKeyOptions(BaseModel):
    """
    Options for issuing a new key.

    - Name: 1-100 chars
    - Permissions: at least one capability
    - Scopes: exact ids or trailing-wildcard prefixes
    """

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: List[Permission] = Field(default_factory=lambda: list(DEFAULT_PERMISSIONS), min_length=1)
    allowed_resource_scopes: Optional[List[str]] = None
    expires_at: Optional[datetime] = None
    allowed_origins: Optional[List[str]] = None
    ip_whitelist: Optional[List[str]] = None
    rate_limit_tier: RateLimitTier = RateLimitTier.STANDARD

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None

    @field_validator("allowed_resource_scopes")
    @classmethod
    def validate_scopes(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_scopes(v)

    @field_validator("ip_whitelist")
    @classmethod
    def validate_ip_whitelist(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_ips(v)

    @field_validator("allowed_origins")
    @classmethod
    def validate_allowed_origins(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_origins(v)


class KeyUpdate(BaseModel):
    """Whitelisted mutable fields of a key. Unset fields are left unchanged."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[List[Permission]] = Field(default=None, min_length=1)
    allowed_resource_scopes: Optional[List[str]] = None
    allowed_origins: Optional[List[str]] = None
    ip_whitelist: Optional[List[str]] = None
    status: Optional[KeyStatus] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[KeyStatus]) -> Optional[KeyStatus]:
        if v == KeyStatus.REVOKED:
            raise ValueError("Use revoke to revoke a key")
        return v

    @field_validator("allowed_resource_scopes")
    @classmethod
    def validate_scopes(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_scopes(v)

    @field_validator("ip_whitelist")
    @classmethod
    def validate_ip_whitelist(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_ips(v)

    @field_validator("allowed_origins")
    @classmethod
    def validate_allowed_origins(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_origins(v)


MUTABLE_FIELDS = frozenset(KeyUpdate.model_fields)
