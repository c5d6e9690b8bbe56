"""
SQLAlchemy-backed repository.

Counter updates are conditional UPDATE statements evaluated by the database,
so concurrent writers serialize on the key's row:
1. reset-if-due: only the first writer past the reset date matches
2. increment-if-under-limit: a writer at the budget matches nothing

Driver errors are raised as StorageUnavailable; their text never reaches
callers.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from apikey_service.db_models import APIKeyRow, Base, OwnerSettingsRow, UsageLogRow
from apikey_service.errors import (
    APIKeyError,
    DuplicateDigest,
    InvalidKeyOptions,
    KeyNotFound,
    StorageUnavailable,
)
from apikey_service.models import (
    APIKey,
    KeyStatus,
    OwnerSettings,
    Permission,
    RateLimitTier,
    UsageCounters,
    UsageLogEntry,
)
from apikey_service.repository import KeyRepository

_ENUM_FIELDS = {"status", "permissions", "rate_limit_tier"}


def _row_to_key(row: APIKeyRow) -> APIKey:
    return APIKey(
        key_id=row.key_id,
        owner_id=row.owner_id,
        name=row.name,
        description=row.description,
        key_prefix=row.key_prefix,
        hashed_secret=row.hashed_secret,
        permissions=[Permission(p) for p in row.permissions],
        status=KeyStatus(row.status),
        created_at=row.created_at,
        expires_at=row.expires_at,
        rate_limit_tier=RateLimitTier(row.rate_limit_tier),
        usage_count=row.usage_count,
        monthly_usage_count=row.monthly_usage_count,
        monthly_usage_reset_date=row.monthly_usage_reset_date,
        allowed_origins=row.allowed_origins,
        ip_whitelist=row.ip_whitelist,
        allowed_resource_scopes=row.allowed_resource_scopes,
        last_used_at=row.last_used_at,
        last_used_ip=row.last_used_ip,
        last_used_agent=row.last_used_agent,
    )


def _column_value(name: str, value: Any) -> Any:
    if name == "permissions":
        return [Permission(p).value for p in value]
    if name in _ENUM_FIELDS and value is not None:
        return value.value
    return value


def _row_to_entry(row: UsageLogRow) -> UsageLogEntry:
    return UsageLogEntry(
        key_id=row.key_id,
        owner_id=row.owner_id,
        timestamp=row.timestamp,
        endpoint=row.endpoint,
        method=row.method,
        status_code=row.status_code,
        response_time_ms=row.response_time_ms,
        caller_ip=row.caller_ip,
        caller_agent=row.caller_agent,
        request_size=row.request_size,
        response_size=row.response_size,
        error_message=row.error_message,
    )


class SQLKeyRepository(KeyRepository):
    """Repository over any SQLAlchemy engine (PostgreSQL, SQLite)."""

    def __init__(self, engine: Engine, create_tables: bool = True):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False, **engine_kwargs) -> "SQLKeyRepository":
        if database_url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
        return cls(create_engine(database_url, echo=echo, **engine_kwargs))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except APIKeyError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageUnavailable(f"Database error: {e}", cause=e) from e
        finally:
            session.close()

    def add_key(self, record: APIKey) -> None:
        row = APIKeyRow(**{
            name: _column_value(name, getattr(record, name))
            for name in APIKeyRow.__table__.columns.keys()
        })
        try:
            with self._session() as session:
                session.add(row)
        except StorageUnavailable as e:
            if isinstance(e.cause, IntegrityError):
                raise DuplicateDigest("Digest collision on key creation", cause=e.cause) from e.cause
            raise

    def get_key(self, owner_id: str, key_id: str) -> Optional[APIKey]:
        with self._session() as session:
            row = session.execute(
                select(APIKeyRow).where(APIKeyRow.key_id == key_id, APIKeyRow.owner_id == owner_id)
            ).scalar_one_or_none()
            return _row_to_key(row) if row else None

    def find_by_digest(self, digest: str) -> Optional[APIKey]:
        with self._session() as session:
            row = session.execute(
                select(APIKeyRow).where(APIKeyRow.hashed_secret == digest)
            ).scalar_one_or_none()
            return _row_to_key(row) if row else None

    def list_keys(self, owner_id: str) -> List[APIKey]:
        with self._session() as session:
            rows = session.execute(
                select(APIKeyRow)
                .where(APIKeyRow.owner_id == owner_id)
                .order_by(APIKeyRow.created_at, APIKeyRow.key_id)
            ).scalars().all()
            return [_row_to_key(row) for row in rows]

    def count_live_keys(self, owner_id: str) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count())
                .select_from(APIKeyRow)
                .where(APIKeyRow.owner_id == owner_id, APIKeyRow.status != KeyStatus.REVOKED.value)
            ).scalar_one()

    def update_key(self, owner_id: str, key_id: str, changes: Dict[str, Any]) -> APIKey:
        values = {name: _column_value(name, value) for name, value in changes.items()}
        with self._session() as session:
            stmt = update(APIKeyRow).where(APIKeyRow.key_id == key_id, APIKeyRow.owner_id == owner_id)
            new_status = changes.get("status")
            if new_status is not None and new_status != KeyStatus.REVOKED:
                stmt = stmt.where(APIKeyRow.status != KeyStatus.REVOKED.value)
            result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            row = session.execute(
                select(APIKeyRow).where(APIKeyRow.key_id == key_id, APIKeyRow.owner_id == owner_id)
            ).scalar_one_or_none()
            if row is None:
                raise KeyNotFound()
            if result.rowcount == 0:
                raise InvalidKeyOptions("Revoked keys cannot be reactivated")
            return _row_to_key(row)

    def increment_usage(
        self,
        key_id: str,
        now: datetime,
        next_reset: datetime,
        limit: Optional[int] = None,
    ) -> Optional[UsageCounters]:
        with self._session() as session:
            reset = (
                update(APIKeyRow)
                .where(APIKeyRow.key_id == key_id, APIKeyRow.monthly_usage_reset_date <= now)
                .values(
                    monthly_usage_count=1,
                    monthly_usage_reset_date=next_reset,
                    usage_count=APIKeyRow.usage_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            result = session.execute(reset)

            if result.rowcount == 0:
                increment = (
                    update(APIKeyRow)
                    .where(APIKeyRow.key_id == key_id, APIKeyRow.monthly_usage_reset_date > now)
                    .values(
                        monthly_usage_count=APIKeyRow.monthly_usage_count + 1,
                        usage_count=APIKeyRow.usage_count + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if limit is not None:
                    increment = increment.where(APIKeyRow.monthly_usage_count < limit)
                result = session.execute(increment)

            counters = session.execute(
                select(
                    APIKeyRow.usage_count,
                    APIKeyRow.monthly_usage_count,
                    APIKeyRow.monthly_usage_reset_date,
                ).where(APIKeyRow.key_id == key_id)
            ).one_or_none()

            if counters is None:
                raise KeyNotFound()
            if result.rowcount == 0:
                return None
            return UsageCounters(
                usage_count=counters.usage_count,
                monthly_usage_count=counters.monthly_usage_count,
                monthly_usage_reset_date=counters.monthly_usage_reset_date,
            )

    def touch_key(self, key_id: str, now: datetime, ip: Optional[str], agent: Optional[str]) -> None:
        with self._session() as session:
            session.execute(
                update(APIKeyRow)
                .where(APIKeyRow.key_id == key_id)
                .values(last_used_at=now, last_used_ip=ip, last_used_agent=agent)
                .execution_options(synchronize_session=False)
            )

    def append_usage(self, entry: UsageLogEntry) -> None:
        with self._session() as session:
            session.add(UsageLogRow(
                key_id=entry.key_id,
                owner_id=entry.owner_id,
                timestamp=entry.timestamp,
                endpoint=entry.endpoint,
                method=entry.method,
                status_code=entry.status_code,
                response_time_ms=entry.response_time_ms,
                caller_ip=entry.caller_ip,
                caller_agent=entry.caller_agent,
                request_size=entry.request_size,
                response_size=entry.response_size,
                error_message=entry.error_message,
            ))

    def list_usage(self, owner_id: str, key_id: Optional[str] = None) -> List[UsageLogEntry]:
        with self._session() as session:
            stmt = select(UsageLogRow).where(UsageLogRow.owner_id == owner_id)
            if key_id is not None:
                stmt = stmt.where(UsageLogRow.key_id == key_id)
            rows = session.execute(stmt.order_by(UsageLogRow.timestamp, UsageLogRow.id)).scalars().all()
            return [_row_to_entry(row) for row in rows]

    def get_owner_settings(self, owner_id: str) -> Optional[OwnerSettings]:
        with self._session() as session:
            row = session.get(OwnerSettingsRow, owner_id)
            if row is None:
                return None
            return OwnerSettings(
                max_keys_allowed=row.max_keys_allowed,
                default_key_expiration=row.default_key_expiration,
                enable_usage_logging=row.enable_usage_logging,
            )

    def save_owner_settings(self, owner_id: str, settings: OwnerSettings) -> None:
        with self._session() as session:
            session.merge(OwnerSettingsRow(
                owner_id=owner_id,
                max_keys_allowed=settings.max_keys_allowed,
                default_key_expiration=settings.default_key_expiration,
                enable_usage_logging=settings.enable_usage_logging,
            ))
