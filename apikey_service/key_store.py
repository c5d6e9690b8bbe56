"""
Per-owner key lifecycle: create, update, revoke, lookup.

The plaintext token is returned exactly once, from create(). Only its
digest and display prefix are stored.
"""
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from apikey_service.config import get_settings
from apikey_service.errors import (
    DuplicateDigest,
    ImmutableField,
    InvalidKeyOptions,
    KeyLimitExceeded,
    KeyNotFound,
)
from apikey_service.logging_config import get_logger, log_key_created, log_key_revoked, log_key_updated
from apikey_service.models import (
    MUTABLE_FIELDS,
    APIKey,
    CreateKeyOptions,
    KeyStatus,
    KeyUpdate,
    OwnerSettings,
    utcnow,
)
from apikey_service.rate_limiter import next_reset_date
from apikey_service.repository import KeyRepository
from apikey_service.tokens import TokenCodec

logger = get_logger(__name__)

EXPIRATION_DELTAS = {
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
    "never": None,
}

# Explicit None on these means "leave unchanged"
_NON_NULLABLE_UPDATES = ("name", "permissions", "status")

_GENERATION_ATTEMPTS = 3


def _validation_details(error: ValidationError) -> Dict[str, Any]:
    return {
        "errors": [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in error.errors()
        ]
    }


def expiry_for_policy(policy: str, now: datetime) -> Optional[datetime]:
    """Expiry timestamp for a default-expiration policy, None for 'never'."""
    if policy not in EXPIRATION_DELTAS:
        raise InvalidKeyOptions(f"Unknown expiration policy: {policy}")
    delta = EXPIRATION_DELTAS[policy]
    return now + delta if delta else None


class KeyRecordStore:
    """Manage API key records for many owners"""

    def __init__(
        self,
        repository: KeyRepository,
        codec: TokenCodec,
        settings=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            repository: Persistence backend
            codec: Token generator and hasher
            settings: Settings providing owner defaults (process settings if omitted)
            clock: Source of naive UTC "now"
        """
        self.repository = repository
        self.codec = codec
        self.settings = settings or get_settings()
        self.clock = clock
        self._owner_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._guard = threading.Lock()

    def _owner_lock(self, owner_id: str) -> threading.Lock:
        with self._guard:
            return self._owner_locks[owner_id]

    # ------------------------------------------------------------------
    # Owner settings
    # ------------------------------------------------------------------

    def owner_settings(self, owner_id: str) -> OwnerSettings:
        """Stored owner policy, falling back to configured defaults."""
        stored = self.repository.get_owner_settings(owner_id)
        if stored is not None:
            return stored
        return OwnerSettings(
            max_keys_allowed=self.settings.default_max_keys_per_owner,
            default_key_expiration=self.settings.default_key_expiration,
            enable_usage_logging=self.settings.enable_usage_logging,
        )

    def set_owner_settings(self, owner_id: str, **changes) -> OwnerSettings:
        current = self.owner_settings(owner_id)
        unknown = set(changes) - set(OwnerSettings.__dataclass_fields__)
        if unknown:
            raise InvalidKeyOptions(f"Unknown owner settings: {', '.join(sorted(unknown))}")
        if "default_key_expiration" in changes and changes["default_key_expiration"] not in EXPIRATION_DELTAS:
            raise InvalidKeyOptions(f"Unknown expiration policy: {changes['default_key_expiration']}")
        if "max_keys_allowed" in changes and changes["max_keys_allowed"] < 1:
            raise InvalidKeyOptions("max_keys_allowed must be at least 1")

        updated = OwnerSettings(**{**current.__dict__, **changes})
        self.repository.save_owner_settings(owner_id, updated)
        return updated

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        owner_id: str,
        options: Union[CreateKeyOptions, Mapping[str, Any]],
    ) -> Tuple[str, APIKey]:
        """
        Issue a new key for an owner.

        Args:
            owner_id: Owning tenant
            options: Name, permissions, scopes, restrictions, optional expiry

        Returns:
            Tuple of (plaintext token, stored record)

        Raises:
            InvalidKeyOptions: If options fail validation
            KeyLimitExceeded: If the owner already holds the maximum live keys
        """
        if not isinstance(options, CreateKeyOptions):
            try:
                options = CreateKeyOptions(**options)
            except ValidationError as e:
                raise InvalidKeyOptions("Invalid API key options", details=_validation_details(e))

        policy = self.owner_settings(owner_id)

        with self._owner_lock(owner_id):
            if self.repository.count_live_keys(owner_id) >= policy.max_keys_allowed:
                logger.warning("key_limit_exceeded", owner_id=owner_id, max_keys=policy.max_keys_allowed)
                raise KeyLimitExceeded(policy.max_keys_allowed)

            now = self.clock()
            expires_at = options.expires_at
            if expires_at is None:
                expires_at = expiry_for_policy(policy.default_key_expiration, now)

            for attempt in range(1, _GENERATION_ATTEMPTS + 1):
                plaintext, key_id = self.codec.generate()
                record = APIKey(
                    key_id=key_id,
                    owner_id=owner_id,
                    name=options.name,
                    description=options.description,
                    key_prefix=self.codec.display_prefix(plaintext),
                    hashed_secret=self.codec.hash(plaintext),
                    permissions=list(options.permissions),
                    status=KeyStatus.ACTIVE,
                    created_at=now,
                    expires_at=expires_at,
                    rate_limit_tier=options.rate_limit_tier,
                    usage_count=0,
                    monthly_usage_count=0,
                    monthly_usage_reset_date=next_reset_date(now),
                    allowed_origins=options.allowed_origins,
                    ip_whitelist=options.ip_whitelist,
                    allowed_resource_scopes=options.allowed_resource_scopes,
                )
                try:
                    self.repository.add_key(record)
                    break
                except DuplicateDigest:
                    if attempt == _GENERATION_ATTEMPTS:
                        raise
                    logger.warning("key_generation_collision", owner_id=owner_id, attempt=attempt)

        log_key_created(
            owner_id,
            record.key_id,
            record.key_prefix,
            permissions=[p.value for p in record.permissions],
            rate_limit_tier=record.rate_limit_tier.value,
            expires_at=record.expires_at.isoformat() if record.expires_at else None,
        )
        return plaintext, record

    def revoke(self, owner_id: str, key_id: str) -> APIKey:
        """
        Revoke a key. Revocation is terminal.

        Raises:
            KeyNotFound: If the owner has no such key
        """
        record = self.repository.update_key(owner_id, key_id, {"status": KeyStatus.REVOKED})
        log_key_revoked(owner_id, key_id)
        return record

    def update(self, owner_id: str, key_id: str, fields: Mapping[str, Any]) -> APIKey:
        """
        Apply a partial update of whitelisted fields.

        Raises:
            ImmutableField: If any field is not updatable
            InvalidKeyOptions: If values fail validation or would reactivate a revoked key
            KeyNotFound: If the owner has no such key
        """
        rejected = [name for name in fields if name not in MUTABLE_FIELDS]
        if rejected:
            raise ImmutableField(rejected)

        fields = {
            name: value for name, value in fields.items()
            if not (name in _NON_NULLABLE_UPDATES and value is None)
        }
        try:
            update = KeyUpdate(**fields)
        except ValidationError as e:
            raise InvalidKeyOptions("Invalid API key update", details=_validation_details(e))

        changes = update.model_dump(exclude_unset=True)
        if not changes:
            return self.get(owner_id, key_id)

        record = self.repository.update_key(owner_id, key_id, changes)
        log_key_updated(owner_id, key_id, list(changes))
        return record

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, owner_id: str, key_id: str) -> APIKey:
        record = self.repository.get_key(owner_id, key_id)
        if record is None:
            raise KeyNotFound()
        return record

    def find_by_digest(self, digest: str) -> Optional[APIKey]:
        """Indexed lookup used on every request."""
        return self.repository.find_by_digest(digest)

    def list_keys(self, owner_id: str) -> List[APIKey]:
        return self.repository.list_keys(owner_id)

    def summary(self, owner_id: str) -> Dict[str, int]:
        """Key counts and usage totals for an owner."""
        records = self.list_keys(owner_id)
        return {
            "total_keys": len(records),
            "active_keys": sum(1 for r in records if r.status == KeyStatus.ACTIVE),
            "revoked_keys": sum(1 for r in records if r.status == KeyStatus.REVOKED),
            "total_usage": sum(r.usage_count for r in records),
            "monthly_usage": sum(r.monthly_usage_count for r in records),
        }
