"""
Persistence contract for key records and usage logs, plus the in-memory
implementation.

Records are partitioned by owner. Lookup by digest is O(1) through a unique
digest index. Counter updates are serialized per key, never globally.
"""
import abc
import copy
import threading
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from apikey_service.errors import DuplicateDigest, InvalidKeyOptions, KeyNotFound
from apikey_service.models import (
    APIKey,
    KeyStatus,
    OwnerSettings,
    UsageCounters,
    UsageLogEntry,
)


class KeyRepository(abc.ABC):
    """Storage operations the key store, validator and usage logger need."""

    @abc.abstractmethod
    def add_key(self, record: APIKey) -> None:
        """Persist a new record. Raises DuplicateDigest on digest collision."""

    @abc.abstractmethod
    def get_key(self, owner_id: str, key_id: str) -> Optional[APIKey]:
        """Get an owner's key by id."""

    @abc.abstractmethod
    def find_by_digest(self, digest: str) -> Optional[APIKey]:
        """Get a key by its hashed secret."""

    @abc.abstractmethod
    def list_keys(self, owner_id: str) -> List[APIKey]:
        """List an owner's keys, oldest first."""

    @abc.abstractmethod
    def count_live_keys(self, owner_id: str) -> int:
        """Number of non-revoked keys an owner holds."""

    @abc.abstractmethod
    def update_key(self, owner_id: str, key_id: str, changes: Dict[str, Any]) -> APIKey:
        """
        Apply field changes to a key and return the updated record.

        A revoked key can never change status again.

        Raises:
            KeyNotFound: If the owner has no such key
            InvalidKeyOptions: If the change would leave the revoked state
        """

    @abc.abstractmethod
    def increment_usage(
        self,
        key_id: str,
        now: datetime,
        next_reset: datetime,
        limit: Optional[int] = None,
    ) -> Optional[UsageCounters]:
        """
        Atomically count one call against a key.

        If the monthly reset date has passed, the monthly counter becomes 1 and
        the reset date moves to next_reset. Otherwise the monthly counter is
        incremented, unless limit is given and already reached, in which case
        nothing changes and None is returned. The lifetime counter is
        incremented whenever the call is counted.

        Raises:
            KeyNotFound: If no key has this id
        """

    @abc.abstractmethod
    def touch_key(self, key_id: str, now: datetime, ip: Optional[str], agent: Optional[str]) -> None:
        """Record last-use metadata."""

    @abc.abstractmethod
    def append_usage(self, entry: UsageLogEntry) -> None:
        """Append a usage log entry."""

    @abc.abstractmethod
    def list_usage(self, owner_id: str, key_id: Optional[str] = None) -> List[UsageLogEntry]:
        """List an owner's usage entries, oldest first."""

    @abc.abstractmethod
    def get_owner_settings(self, owner_id: str) -> Optional[OwnerSettings]:
        """Stored per-owner policy, if any."""

    @abc.abstractmethod
    def save_owner_settings(self, owner_id: str, settings: OwnerSettings) -> None:
        """Store per-owner policy."""


def apply_changes(record: APIKey, changes: Dict[str, Any]) -> None:
    """Apply whitelisted changes in place, guarding the terminal revoked state."""
    new_status = changes.get("status")
    if record.status == KeyStatus.REVOKED and new_status is not None and new_status != KeyStatus.REVOKED:
        raise InvalidKeyOptions("Revoked keys cannot be reactivated")
    for name, value in changes.items():
        setattr(record, name, copy.deepcopy(value))


def count_call(
    record: APIKey,
    now: datetime,
    next_reset: datetime,
    limit: Optional[int],
) -> Optional[UsageCounters]:
    """Counter transition shared by repositories that lock per key."""
    if now >= record.monthly_usage_reset_date:
        record.monthly_usage_count = 1
        record.monthly_usage_reset_date = next_reset
    elif limit is not None and record.monthly_usage_count >= limit:
        return None
    else:
        record.monthly_usage_count += 1
    record.usage_count += 1
    return UsageCounters(
        usage_count=record.usage_count,
        monthly_usage_count=record.monthly_usage_count,
        monthly_usage_reset_date=record.monthly_usage_reset_date,
    )


class InMemoryKeyRepository(KeyRepository):
    """
    Thread-safe in-memory repository.

    The structural lock guards the indexes; each key has its own lock for
    counter and field updates.
    """

    def __init__(self, max_usage_entries_per_owner: int = 100000):
        self._keys: Dict[str, APIKey] = {}
        self._digest_index: Dict[str, str] = {}
        self._owner_index: Dict[str, List[str]] = defaultdict(list)
        self._key_locks: Dict[str, threading.Lock] = {}
        self._usage: Dict[str, Deque[UsageLogEntry]] = defaultdict(
            lambda: deque(maxlen=max_usage_entries_per_owner)
        )
        self._owner_settings: Dict[str, OwnerSettings] = {}
        self._lock = threading.RLock()

    def add_key(self, record: APIKey) -> None:
        with self._lock:
            if record.hashed_secret in self._digest_index:
                raise DuplicateDigest("Digest collision on key creation")
            if record.key_id in self._keys:
                raise DuplicateDigest("Key id collision on key creation")
            self._keys[record.key_id] = copy.deepcopy(record)
            self._digest_index[record.hashed_secret] = record.key_id
            self._owner_index[record.owner_id].append(record.key_id)
            self._key_locks[record.key_id] = threading.Lock()

    def _locked(self, key_id: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key_id)
        if lock is None:
            raise KeyNotFound()
        return lock

    def get_key(self, owner_id: str, key_id: str) -> Optional[APIKey]:
        record = self._keys.get(key_id)
        if record is None or record.owner_id != owner_id:
            return None
        with self._locked(key_id):
            return copy.deepcopy(record)

    def find_by_digest(self, digest: str) -> Optional[APIKey]:
        with self._lock:
            key_id = self._digest_index.get(digest)
        if key_id is None:
            return None
        with self._locked(key_id):
            return copy.deepcopy(self._keys[key_id])

    def list_keys(self, owner_id: str) -> List[APIKey]:
        with self._lock:
            key_ids = list(self._owner_index.get(owner_id, []))
        return [self.get_key(owner_id, key_id) for key_id in key_ids]

    def count_live_keys(self, owner_id: str) -> int:
        with self._lock:
            return sum(1 for key_id in self._owner_index.get(owner_id, []) if self._keys[key_id].is_live)

    def update_key(self, owner_id: str, key_id: str, changes: Dict[str, Any]) -> APIKey:
        record = self._keys.get(key_id)
        if record is None or record.owner_id != owner_id:
            raise KeyNotFound()
        with self._locked(key_id):
            apply_changes(record, changes)
            return copy.deepcopy(record)

    def increment_usage(
        self,
        key_id: str,
        now: datetime,
        next_reset: datetime,
        limit: Optional[int] = None,
    ) -> Optional[UsageCounters]:
        with self._locked(key_id):
            return count_call(self._keys[key_id], now, next_reset, limit)

    def touch_key(self, key_id: str, now: datetime, ip: Optional[str], agent: Optional[str]) -> None:
        with self._locked(key_id):
            record = self._keys[key_id]
            record.last_used_at = now
            record.last_used_ip = ip
            record.last_used_agent = agent

    def append_usage(self, entry: UsageLogEntry) -> None:
        with self._lock:
            self._usage[entry.owner_id].append(copy.deepcopy(entry))

    def list_usage(self, owner_id: str, key_id: Optional[str] = None) -> List[UsageLogEntry]:
        with self._lock:
            entries = list(self._usage.get(owner_id, ()))
        if key_id is not None:
            entries = [e for e in entries if e.key_id == key_id]
        return copy.deepcopy(entries)

    def get_owner_settings(self, owner_id: str) -> Optional[OwnerSettings]:
        with self._lock:
            settings = self._owner_settings.get(owner_id)
            return copy.deepcopy(settings) if settings else None

    def save_owner_settings(self, owner_id: str, settings: OwnerSettings) -> None:
        with self._lock:
            self._owner_settings[owner_id] = copy.deepcopy(settings)
