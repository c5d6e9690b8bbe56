"""
Exception hierarchy for key management and request authorization.

Every rejection carries a machine-readable code, a human-readable message
and an HTTP-style status class:
- 401: identity/authentication failures
- 403: authorization failures (permission, scope, key limit)
- 429: rate limiting
- 500: internal faults (storage, configuration)

Internal faults never expose the underlying cause to the caller; the cause
is kept on the exception for logging only.
"""
from typing import Any, Dict, List, Optional


class APIKeyError(Exception):
    """Base exception for the API key service."""

    code: str = "API_KEY_ERROR"
    status_code: int = 400
    default_message: str = "API key error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the public error payload."""
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationRejected(APIKeyError):
    """A request validator rejection."""


# ---------------------------------------------------------------------------
# 401: the caller could not be identified
# ---------------------------------------------------------------------------


class AuthenticationError(ValidationRejected):
    status_code = 401


class MissingKey(AuthenticationError):
    code = "MissingKey"
    default_message = "API key is required. Provide it in the X-API-Key header."


class InvalidKeyFormat(AuthenticationError):
    code = "InvalidKeyFormat"
    default_message = "Invalid API key format"


class MalformedKey(AuthenticationError):
    code = "MalformedKey"
    default_message = "API key is malformed"


class InvalidEnvironment(AuthenticationError):
    code = "InvalidEnvironment"
    default_message = "API key environment is not recognized"


class KeyNotFound(AuthenticationError):
    code = "KeyNotFound"
    default_message = "API key not found"


class InactiveKey(AuthenticationError):
    code = "InactiveKey"
    default_message = "API key is inactive or has been revoked"


class ExpiredKey(AuthenticationError):
    code = "ExpiredKey"
    default_message = "API key has expired"


# ---------------------------------------------------------------------------
# 403: identified, but not allowed
# ---------------------------------------------------------------------------


class AuthorizationError(ValidationRejected):
    status_code = 403


class InsufficientPermissions(AuthorizationError):
    code = "InsufficientPermissions"
    default_message = "API key does not have the required permission"

    def __init__(self, required: str, granted: Optional[List[str]] = None):
        self.required = required
        super().__init__(
            f"API key does not have the '{required}' permission",
            details={"required": required, "granted": sorted(granted or [])},
        )


class InsufficientScope(AuthorizationError):
    code = "InsufficientScope"
    default_message = "API key is not scoped to this resource"

    def __init__(self, resource_id: str, patterns: Optional[List[str]] = None):
        self.resource_id = resource_id
        self.patterns = list(patterns or [])
        super().__init__(
            f"API key is not scoped to resource '{resource_id}'",
            details={"resource_id": resource_id, "allowed_scopes": self.patterns},
        )


class KeyLimitExceeded(APIKeyError):
    code = "KeyLimitExceeded"
    status_code = 403

    def __init__(self, max_keys: int):
        self.max_keys = max_keys
        super().__init__(
            f"Maximum number of API keys reached ({max_keys})",
            details={"max_keys": max_keys},
        )


# ---------------------------------------------------------------------------
# 429
# ---------------------------------------------------------------------------


class RateLimitExceeded(ValidationRejected):
    code = "RateLimitExceeded"
    status_code = 429

    def __init__(self, limit: int, reset_timestamp: int, retry_after_seconds: int):
        self.limit = limit
        self.remaining = 0
        self.reset_timestamp = reset_timestamp
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Monthly request limit of {limit} exceeded. Retry after {retry_after_seconds} seconds",
            details={
                "limit": limit,
                "remaining": 0,
                "reset": reset_timestamp,
                "retry_after": retry_after_seconds,
            },
        )

    def headers(self) -> Dict[str, str]:
        return {
            "Retry-After": str(self.retry_after_seconds),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_timestamp),
        }


# ---------------------------------------------------------------------------
# 400: bad management input
# ---------------------------------------------------------------------------


class InvalidKeyOptions(APIKeyError):
    code = "InvalidKeyOptions"
    default_message = "Invalid API key options"


class ImmutableField(InvalidKeyOptions):
    code = "ImmutableField"

    def __init__(self, fields: List[str]):
        self.fields = sorted(fields)
        super().__init__(
            f"Fields cannot be updated: {', '.join(self.fields)}",
            details={"fields": self.fields},
        )


# ---------------------------------------------------------------------------
# 500
# ---------------------------------------------------------------------------


class InternalError(APIKeyError):
    code = "InternalError"
    status_code = 500
    default_message = "Internal server error. Please try again later."

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        # The public message is always the generic one
        super().__init__(self.default_message)
        self.internal_message = message or self.default_message
        self.cause = cause


class StorageUnavailable(InternalError):
    code = "StorageUnavailable"


class ConfigurationError(InternalError):
    code = "ConfigurationError"


class DuplicateDigest(InternalError):
    code = "DuplicateDigest"
