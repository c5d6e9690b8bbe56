"""
Unit tests for usage logging and analytics
"""
from datetime import datetime
from unittest.mock import patch

import pytest

from apikey_service.models import CallMetadata


def call(endpoint="/api/posts", method="GET", status_code=200, response_time_ms=None):
    return CallMetadata(
        endpoint=endpoint,
        method=method,
        status_code=status_code,
        response_time_ms=response_time_ms,
        caller_ip="198.51.100.7",
        caller_agent="sdk/1.0",
    )


class TestUsageLogger:
    """Test suite for UsageLogger.record"""

    @pytest.fixture
    def key(self, key_store, owner_id, create_options):
        _, record = key_store.create(owner_id, create_options)
        return record

    def test_record_appends_and_counts(self, usage_logger, key_store, owner_id, key):
        """One record is one entry plus one counter increment"""
        assert usage_logger.record(owner_id, key.key_id, call()) is True

        entries = key_store.repository.list_usage(owner_id, key.key_id)
        stored = key_store.get(owner_id, key.key_id)

        assert len(entries) == 1
        assert entries[0].endpoint == "/api/posts"
        assert entries[0].method == "GET"
        assert stored.usage_count == 1
        assert stored.monthly_usage_count == 1
        assert stored.last_used_ip == "198.51.100.7"

    def test_record_without_count(self, usage_logger, key_store, owner_id, key):
        """count=False leaves counters to the caller"""
        usage_logger.record(owner_id, key.key_id, call(), count=False)

        assert key_store.get(owner_id, key.key_id).usage_count == 0
        assert len(key_store.repository.list_usage(owner_id)) == 1

    def test_method_normalized(self, usage_logger, key_store, owner_id, key):
        usage_logger.record(owner_id, key.key_id, call(method="post"))
        assert key_store.repository.list_usage(owner_id)[0].method == "POST"

    def test_logging_disabled_still_counts(self, usage_logger, key_store, owner_id, key):
        """Disabling logs skips the entry but never the counter"""
        key_store.set_owner_settings(owner_id, enable_usage_logging=False)

        with patch("apikey_service.usage.log_usage_logging_disabled") as log_disabled:
            assert usage_logger.record(owner_id, key.key_id, call()) is True

        log_disabled.assert_called_once_with(owner_id, key.key_id)
        assert key_store.repository.list_usage(owner_id) == []
        assert key_store.get(owner_id, key.key_id).monthly_usage_count == 1

    def test_failures_swallowed(self, usage_logger, key_store, owner_id, key):
        """Storage errors are reported, never raised"""
        with patch.object(key_store.repository, "append_usage", side_effect=RuntimeError("boom")):
            with patch("apikey_service.usage.log_usage_failure") as log_failure:
                assert usage_logger.record(owner_id, key.key_id, call()) is False

        log_failure.assert_called_once()
        assert isinstance(log_failure.call_args.args[2], RuntimeError)

    def test_unknown_key_swallowed(self, usage_logger, owner_id):
        """Recording for a missing key fails quietly"""
        assert usage_logger.record(owner_id, "key_missing", call()) is False

    def test_record_rolls_over_month(self, usage_logger, key_store, owner_id, key, clock):
        """The first record after the reset date restarts the monthly count"""
        usage_logger.record(owner_id, key.key_id, call())
        usage_logger.record(owner_id, key.key_id, call())
        clock.now = datetime(2026, 4, 2)
        usage_logger.record(owner_id, key.key_id, call())

        stored = key_store.get(owner_id, key.key_id)
        assert stored.monthly_usage_count == 1
        assert stored.usage_count == 3
        assert stored.monthly_usage_reset_date == datetime(2026, 5, 1)


class TestAnalytics:
    """Test suite for usage analytics"""

    @pytest.fixture
    def keys(self, key_store, owner_id, create_options):
        return [key_store.create(owner_id, create_options)[1] for _ in range(2)]

    def test_empty(self, usage_logger, owner_id):
        """No traffic reports a full success rate"""
        stats = usage_logger.analytics(owner_id)

        assert stats["total_requests"] == 0
        assert stats["success_rate"] == 100.0
        assert stats["avg_response_time_ms"] == 0

    def test_analytics(self, usage_logger, owner_id, keys, clock):
        first, second = keys
        clock.now = datetime(2026, 3, 10)
        usage_logger.record(owner_id, first.key_id, call(response_time_ms=100))
        clock.now = datetime(2026, 3, 15, 12, 0)
        usage_logger.record(owner_id, first.key_id, call(status_code=500, response_time_ms=300))
        usage_logger.record(owner_id, first.key_id, call(status_code=404))
        usage_logger.record(owner_id, second.key_id, call())

        stats = usage_logger.analytics(owner_id)
        assert stats["total_requests"] == 4
        assert stats["last_24_hours"] == 3
        assert stats["error_count"] == 2
        assert stats["success_rate"] == 50.0
        assert stats["avg_response_time_ms"] == 200

        per_key = usage_logger.analytics(owner_id, first.key_id)
        assert per_key["total_requests"] == 3

    def test_popular_endpoints(self, usage_logger, owner_id, keys):
        key = keys[0]
        for _ in range(3):
            usage_logger.record(owner_id, key.key_id, call("/api/posts", "GET"))
        usage_logger.record(owner_id, key.key_id, call("/api/posts", "POST"))
        usage_logger.record(owner_id, key.key_id, call("/api/media", "POST"))
        usage_logger.record(owner_id, key.key_id, call("/api/media", "POST"))

        popular = usage_logger.popular_endpoints(owner_id, limit=2)
        assert popular == [
            {"endpoint": "GET /api/posts", "count": 3},
            {"endpoint": "POST /api/media", "count": 2},
        ]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
