"""
Usage logging and analytics.

record() is best-effort: a failure is logged and swallowed, never raised to
the request that triggered it. Counters are incremented even when an
owner has disabled detailed logging, so rate limits cannot be bypassed.
"""
import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from apikey_service.key_store import KeyRecordStore
from apikey_service.logging_config import (
    get_logger,
    log_usage_failure,
    log_usage_logging_disabled,
    log_usage_recorded,
)
from apikey_service.models import APIKey, CallMetadata, UsageLogEntry, utcnow
from apikey_service.rate_limiter import next_reset_date

logger = get_logger(__name__)


class UsageLogger:
    """Append usage entries and maintain per-key counters"""

    def __init__(self, key_store: KeyRecordStore, clock: Callable[[], datetime] = utcnow):
        self.key_store = key_store
        self.repository = key_store.repository
        self.clock = clock

    def record(self, owner_id: str, key_id: str, call: CallMetadata, count: bool = True) -> bool:
        """
        Record one call made with a key.

        Args:
            owner_id: Owning tenant
            key_id: Key the call was made with
            call: Endpoint, method, status and caller metadata
            count: Increment the key's counters; False when the validator
                already reserved this call against the budget

        Returns:
            True if the call was recorded, False if recording failed
        """
        try:
            self.key_store.get(owner_id, key_id)
            now = self.clock()

            counters = None
            if count:
                counters = self.repository.increment_usage(key_id, now, next_reset_date(now))
            self.repository.touch_key(key_id, now, call.caller_ip, call.caller_agent)

            if not self.key_store.owner_settings(owner_id).enable_usage_logging:
                log_usage_logging_disabled(owner_id, key_id)
                return True

            entry = UsageLogEntry.from_call(owner_id, key_id, call, now)
            self.repository.append_usage(entry)
            log_usage_recorded(
                owner_id,
                key_id,
                entry.endpoint,
                entry.method,
                entry.status_code,
                monthly_usage_count=counters.monthly_usage_count if counters else None,
                response_time_ms=entry.response_time_ms,
            )
            return True
        except Exception as e:
            log_usage_failure(owner_id, key_id, e)
            return False

    def _entries(self, owner_id: str, key_id: Optional[str]) -> List[UsageLogEntry]:
        return self.repository.list_usage(owner_id, key_id)

    def analytics(self, owner_id: str, key_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Summarize usage for an owner, or for one of their keys.

        Returns:
            total_requests, last_24_hours, error_count (status >= 400),
            success_rate (percent, 100 when there is no traffic) and
            avg_response_time_ms
        """
        entries = self._entries(owner_id, key_id)
        since = self.clock() - timedelta(hours=24)

        total = len(entries)
        errors = sum(1 for e in entries if e.status_code >= 400)
        timed = [e.response_time_ms for e in entries if e.response_time_ms]

        return {
            "total_requests": total,
            "last_24_hours": sum(1 for e in entries if e.timestamp > since),
            "error_count": errors,
            "success_rate": ((total - errors) / total) * 100 if total else 100.0,
            "avg_response_time_ms": round(sum(timed) / len(timed)) if timed else 0,
        }

    def popular_endpoints(self, owner_id: str, key_id: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        """Most called "METHOD endpoint" pairs, busiest first."""
        counts = Counter(f"{e.method} {e.endpoint}" for e in self._entries(owner_id, key_id))
        return [{"endpoint": endpoint, "count": n} for endpoint, n in counts.most_common(limit)]


class UsageHandle:
    """
    Returned by a successful validation. The caller records the outcome of
    the downstream action through it, once.
    """

    def __init__(
        self,
        usage_logger: UsageLogger,
        record: APIKey,
        caller_ip: Optional[str] = None,
        caller_agent: Optional[str] = None,
    ):
        self.usage_logger = usage_logger
        self.owner_id = record.owner_id
        self.key_id = record.key_id
        self.caller_ip = caller_ip
        self.caller_agent = caller_agent
        self._recorded = False
        self._lock = threading.Lock()

    @property
    def recorded(self) -> bool:
        return self._recorded

    def record(self, call: CallMetadata) -> bool:
        """
        Record the call. The budget was already counted during validation.

        Returns:
            False if already recorded or if recording failed
        """
        with self._lock:
            if self._recorded:
                logger.warning("usage_already_recorded", owner_id=self.owner_id, key_id=self.key_id)
                return False
            self._recorded = True

        call = replace(
            call,
            caller_ip=call.caller_ip if call.caller_ip is not None else self.caller_ip,
            caller_agent=call.caller_agent if call.caller_agent is not None else self.caller_agent,
        )
        return self.usage_logger.record(self.owner_id, self.key_id, call, count=False)
