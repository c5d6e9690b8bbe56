"""
Per-request validation of a presented API key.

Stages run strictly in order and stop at the first failure:

    received -> format-checked -> looked-up -> status-checked
    -> expiry-checked -> permission-checked -> rate-checked
    -> scope-checked -> authorized

The order fixes which error a caller sees first. The only write is the
final atomic budget reservation; everything before it is read-only.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Union

from apikey_service.errors import (
    APIKeyError,
    ExpiredKey,
    InactiveKey,
    InternalError,
    InsufficientPermissions,
    InvalidEnvironment,
    InvalidKeyFormat,
    KeyNotFound,
    MalformedKey,
    MissingKey,
    RateLimitExceeded,
    StorageUnavailable,
)
from apikey_service.key_store import KeyRecordStore
from apikey_service.logging_config import log_exception, log_rate_limit_exceeded, log_validation_outcome
from apikey_service.models import APIKey, KeyStatus, Permission
from apikey_service.rate_limiter import RateLimiter, RateLimitStatus, next_reset_date, to_epoch_seconds
from apikey_service.scopes import ScopeAuthorizer
from apikey_service.tokens import SEGMENT_SEPARATOR
from apikey_service.usage import UsageHandle, UsageLogger

_HEX_DIGITS = frozenset("0123456789abcdef")


class ValidationStage(str, Enum):
    RECEIVED = "received"
    FORMAT_CHECKED = "format-checked"
    LOOKED_UP = "looked-up"
    STATUS_CHECKED = "status-checked"
    EXPIRY_CHECKED = "expiry-checked"
    PERMISSION_CHECKED = "permission-checked"
    RATE_CHECKED = "rate-checked"
    SCOPE_CHECKED = "scope-checked"
    AUTHORIZED = "authorized"


@dataclass
class AuthorizedRequest:
    """A successful validation."""
    record: APIKey
    rate_limit: RateLimitStatus
    usage: UsageHandle


@dataclass
class _Progress:
    stage: ValidationStage = ValidationStage.RECEIVED
    key_id: Optional[str] = None
    key_prefix: Optional[str] = None
    extra: dict = field(default_factory=dict)


class RequestValidator:
    """Decide whether a presented token may perform a call"""

    def __init__(
        self,
        key_store: KeyRecordStore,
        rate_limiter: RateLimiter,
        scope_authorizer: Optional[ScopeAuthorizer] = None,
        usage_logger: Optional[UsageLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.key_store = key_store
        self.codec = key_store.codec
        self.repository = key_store.repository
        self.rate_limiter = rate_limiter
        self.scope_authorizer = scope_authorizer or ScopeAuthorizer()
        self.clock = clock or key_store.clock
        self.usage_logger = usage_logger or UsageLogger(key_store, clock=self.clock)

    def validate(
        self,
        token: Optional[str],
        required_permission: Union[Permission, str],
        resource_id: Optional[str] = None,
        caller_ip: Optional[str] = None,
        caller_agent: Optional[str] = None,
    ) -> AuthorizedRequest:
        """
        Validate a token for one call.

        Args:
            token: The presented plaintext token
            required_permission: Capability the call needs
            resource_id: Target tenant resource, when the call names one
            caller_ip: Caller address, stamped on the usage record
            caller_agent: Caller user agent, stamped on the usage record

        Returns:
            AuthorizedRequest with the key record, its rate limit status and
            a handle for recording usage after the downstream action

        Raises:
            ValidationRejected: Caller-caused rejection (401/403/429)
            InternalError: Storage or configuration fault (500)
        """
        if isinstance(required_permission, Permission):
            permission = required_permission.value
        else:
            permission = str(required_permission)
        progress = _Progress()
        context = dict(required_permission=permission, resource_id=resource_id)

        try:
            result = self._run(progress, token, permission, resource_id, caller_ip, caller_agent)
        except InternalError as e:
            log_exception(e, {"stage": progress.stage.value, "key_id": progress.key_id})
            log_validation_outcome("rejected", progress.stage.value, progress.key_id, e.code, **context)
            raise
        except APIKeyError as e:
            log_validation_outcome(
                "rejected",
                progress.stage.value,
                progress.key_id,
                e.code,
                key_prefix=progress.key_prefix,
                **context,
                **progress.extra
            )
            raise
        except Exception as e:
            error = StorageUnavailable(f"Key storage failed during validation: {e}", cause=e)
            log_exception(error, {"stage": progress.stage.value, "key_id": progress.key_id})
            log_validation_outcome("rejected", progress.stage.value, progress.key_id, error.code, **context)
            raise error from e

        log_validation_outcome(
            "authorized",
            progress.stage.value,
            progress.key_id,
            key_prefix=progress.key_prefix,
            remaining=result.rate_limit.remaining,
            **context
        )
        return result

    def check_format(self, token: Optional[str]) -> None:
        """
        Raises:
            MissingKey: Empty or absent token
            InvalidKeyFormat: Wrong leading prefix
            MalformedKey: Wrong segment count or random part
            InvalidEnvironment: Unrecognized environment tag
        """
        if token is None or not token.strip():
            raise MissingKey()
        if not token.startswith(self.codec.prefix + SEGMENT_SEPARATOR):
            raise InvalidKeyFormat()

        segments = token.split(SEGMENT_SEPARATOR)
        if len(segments) != 3:
            raise MalformedKey()
        _, environment, random_part = segments
        if environment not in self.codec.environments:
            raise InvalidEnvironment()
        if len(random_part) != self.codec.random_length or not set(random_part) <= _HEX_DIGITS:
            raise MalformedKey()

    def _run(
        self,
        progress: _Progress,
        token: Optional[str],
        permission: str,
        resource_id: Optional[str],
        caller_ip: Optional[str],
        caller_agent: Optional[str],
    ) -> AuthorizedRequest:
        # 1. Format
        self.check_format(token)
        progress.stage = ValidationStage.FORMAT_CHECKED
        progress.key_prefix = self.codec.display_prefix(token)

        # 2. Lookup
        record = self.key_store.find_by_digest(self.codec.hash(token))
        if record is None:
            raise KeyNotFound()
        progress.stage = ValidationStage.LOOKED_UP
        progress.key_id = record.key_id

        # 3. Status
        if record.status != KeyStatus.ACTIVE:
            progress.extra["status"] = record.status.value
            raise InactiveKey()
        progress.stage = ValidationStage.STATUS_CHECKED

        # 4. Expiry
        now = self.clock()
        if record.is_expired(now):
            raise ExpiredKey()
        progress.stage = ValidationStage.EXPIRY_CHECKED

        # 5. Permission
        if not record.has_permission(permission):
            raise InsufficientPermissions(permission, [p.value for p in record.permissions])
        progress.stage = ValidationStage.PERMISSION_CHECKED

        # 6. Rate
        status = self.rate_limiter.check(record, now)
        if not status.allowed:
            raise self._rate_limited(record, status)
        progress.stage = ValidationStage.RATE_CHECKED

        # 7. Scope
        if resource_id is not None:
            self.scope_authorizer.require(record, resource_id)
        progress.stage = ValidationStage.SCOPE_CHECKED

        # Reserve this call against the budget
        counters = self.repository.increment_usage(record.key_id, now, next_reset_date(now), status.limit)
        if counters is None:
            # Budget consumed by concurrent calls since the check
            current = self.key_store.get(record.owner_id, record.key_id)
            blocked = self.rate_limiter.check(current, now)
            if blocked.allowed:
                blocked.allowed = False
                blocked.remaining = 0
                blocked.retry_after_seconds = 1
            raise self._rate_limited(current, blocked)

        record.usage_count = counters.usage_count
        record.monthly_usage_count = counters.monthly_usage_count
        record.monthly_usage_reset_date = counters.monthly_usage_reset_date
        progress.stage = ValidationStage.AUTHORIZED

        rate_limit = RateLimitStatus(
            allowed=True,
            limit=status.limit,
            remaining=max(0, status.limit - counters.monthly_usage_count),
            reset_timestamp=to_epoch_seconds(counters.monthly_usage_reset_date),
        )
        usage = UsageHandle(self.usage_logger, record, caller_ip=caller_ip, caller_agent=caller_agent)
        return AuthorizedRequest(record=record, rate_limit=rate_limit, usage=usage)

    def _rate_limited(self, record: APIKey, status: RateLimitStatus) -> RateLimitExceeded:
        log_rate_limit_exceeded(
            record.key_id,
            record.rate_limit_tier.value,
            status.limit,
            record.monthly_usage_count,
            status.retry_after_seconds,
        )
        return RateLimitExceeded(status.limit, status.reset_timestamp, status.retry_after_seconds)
