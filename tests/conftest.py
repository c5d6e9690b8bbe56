"""Shared test fixtures"""
from datetime import datetime, timedelta

import pytest

from apikey_service.config import load_settings
from apikey_service.key_store import KeyRecordStore
from apikey_service.rate_limiter import RateLimiter
from apikey_service.repository import InMemoryKeyRepository
from apikey_service.sql_repository import SQLKeyRepository
from apikey_service.tokens import TokenCodec
from apikey_service.usage import UsageLogger
from apikey_service.validator import RequestValidator

TEST_SALT = "test-salt-for-testing-only-0123456789abcdef"
OWNER = "owner_1"


class FakeClock:
    """Controllable naive UTC clock"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings():
    """Settings with a test salt and no .env file"""
    return load_settings(_env_file=None, api_key_salt=TEST_SALT, environment="test")


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed mid-month"""
    return FakeClock(datetime(2026, 3, 15, 12, 0, 0))


@pytest.fixture
def codec(settings) -> TokenCodec:
    return TokenCodec.from_settings(settings)


@pytest.fixture
def memory_repository() -> InMemoryKeyRepository:
    return InMemoryKeyRepository()


@pytest.fixture
def sql_repository(tmp_path) -> SQLKeyRepository:
    """SQLite file database, shared across threads"""
    repository = SQLKeyRepository.from_url(f"sqlite:///{tmp_path / 'keys.db'}")
    yield repository
    repository.engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def repository(request):
    """Run a test against each storage backend"""
    return request.getfixturevalue(f"{request.param}_repository")


@pytest.fixture
def key_store(repository, codec, settings, clock) -> KeyRecordStore:
    return KeyRecordStore(repository, codec, settings, clock=clock)


@pytest.fixture
def rate_limiter(settings) -> RateLimiter:
    return RateLimiter.from_settings(settings)


@pytest.fixture
def usage_logger(key_store, clock) -> UsageLogger:
    return UsageLogger(key_store, clock=clock)


@pytest.fixture
def validator(key_store, rate_limiter, usage_logger, clock) -> RequestValidator:
    return RequestValidator(key_store, rate_limiter, usage_logger=usage_logger, clock=clock)


@pytest.fixture
def owner_id() -> str:
    return OWNER


@pytest.fixture
def create_options() -> dict:
    """Typical key creation payload"""
    return {
        "name": "Publishing bot",
        "description": "Posts scheduled content",
        "permissions": ["read-content", "create-content"],
        "rate_limit_tier": "standard",
    }
