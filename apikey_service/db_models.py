"""
SQLAlchemy database models for persistent storage.
"""
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class APIKeyRow(Base):
    """API key table. The digest column is the lookup index."""
    __tablename__ = "api_keys"

    key_id = Column(String(64), primary_key=True)
    owner_id = Column(String(128), index=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    key_prefix = Column(String(32), nullable=False)
    hashed_secret = Column(String(64), unique=True, index=True, nullable=False)
    permissions = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    rate_limit_tier = Column(String(16), nullable=False, default="standard")
    usage_count = Column(Integer, nullable=False, default=0)
    monthly_usage_count = Column(Integer, nullable=False, default=0)
    monthly_usage_reset_date = Column(DateTime, nullable=False)
    allowed_origins = Column(JSON, nullable=True)
    ip_whitelist = Column(JSON, nullable=True)
    allowed_resource_scopes = Column(JSON, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    last_used_ip = Column(String(64), nullable=True)
    last_used_agent = Column(String(512), nullable=True)

    __table_args__ = (
        Index("idx_api_keys_owner_status", "owner_id", "status"),
    )


class UsageLogRow(Base):
    """Append-only usage log table."""
    __tablename__ = "api_key_usage_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key_id = Column(String(64), index=True, nullable=False)
    owner_id = Column(String(128), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    endpoint = Column(String(512), nullable=False)
    method = Column(String(10), nullable=False)
    status_code = Column(Integer, nullable=False)
    response_time_ms = Column(Float, nullable=True)
    caller_ip = Column(String(64), nullable=True)
    caller_agent = Column(String(512), nullable=True)
    request_size = Column(Integer, nullable=True)
    response_size = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_usage_owner_timestamp", "owner_id", "timestamp"),
    )


class OwnerSettingsRow(Base):
    """Per-owner key policy."""
    __tablename__ = "owner_api_settings"

    owner_id = Column(String(128), primary_key=True)
    max_keys_allowed = Column(Integer, nullable=False)
    default_key_expiration = Column(String(8), nullable=False)
    enable_usage_logging = Column(Boolean, nullable=False, default=True)
