"""
Monthly rate limiting by tier.

Provides a fixed budget per tier:
- standard: 1000 requests/month
- premium: 5000 requests/month
- enterprise: 25000 requests/month

check() is a pure computation over a key's counters. The counter itself is
only ever advanced by the repository's atomic increment, which also performs
the monthly rollover.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from apikey_service.config import DEFAULT_TIER_LIMITS
from apikey_service.errors import ConfigurationError
from apikey_service.models import APIKey, RateLimitTier, utcnow


def next_reset_date(now: datetime) -> datetime:
    """First moment of the month following now."""
    if now.month == 12:
        return datetime(now.year + 1, 1, 1)
    return datetime(now.year, now.month + 1, 1)


def to_epoch_seconds(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


@dataclass
class RateLimitStatus:
    """Result of a budget check."""
    allowed: bool
    limit: int
    remaining: int
    reset_timestamp: int
    retry_after_seconds: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        """X-RateLimit-* response headers, plus Retry-After when blocked."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_timestamp),
        }
        if not self.allowed and self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimiter:
    """Map tiers to monthly budgets and evaluate a key against its budget."""

    def __init__(self, tier_limits: Optional[Dict[str, int]] = None):
        self.tier_limits = dict(tier_limits or DEFAULT_TIER_LIMITS)
        missing = [tier.value for tier in RateLimitTier if tier.value not in self.tier_limits]
        if missing:
            raise ConfigurationError(f"No rate limit configured for tiers: {missing}")

    @classmethod
    def from_settings(cls, settings) -> "RateLimiter":
        return cls(settings.tier_limits)

    def limit_for(self, tier: RateLimitTier) -> int:
        return self.tier_limits[RateLimitTier(tier).value]

    def check(self, record: APIKey, now: Optional[datetime] = None) -> RateLimitStatus:
        """
        Evaluate a key's monthly budget.

        A counter whose reset date has passed counts as zero used; the next
        increment performs the actual rollover.

        Args:
            record: Key record with current counters
            now: Evaluation time (naive UTC)

        Returns:
            RateLimitStatus; retry_after_seconds is set only when blocked
        """
        now = now or utcnow()
        limit = self.limit_for(record.rate_limit_tier)

        if now >= record.monthly_usage_reset_date:
            used = 0
            reset_at = next_reset_date(now)
        else:
            used = record.monthly_usage_count
            reset_at = record.monthly_usage_reset_date

        remaining = max(0, limit - used)
        status = RateLimitStatus(
            allowed=remaining > 0,
            limit=limit,
            remaining=remaining,
            reset_timestamp=to_epoch_seconds(reset_at),
        )
        if not status.allowed:
            status.retry_after_seconds = max(1, math.ceil((reset_at - now).total_seconds()))
        return status
