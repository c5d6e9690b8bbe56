"""
Structured logging configuration with rotation.

Every validation outcome and every usage record is emitted as a structured
event. Raw tokens are never logged; at most the non-secret display prefix.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor


_app_name = "apikey-service"


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to all log entries."""
    event_dict["app"] = _app_name
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    log_max_bytes: int = 10485760,  # 10MB
    log_backup_count: int = 5,
    app_name: str = "apikey-service",
) -> None:
    """
    Configure structured logging with rotation.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ('json' or 'console')
        log_file: Optional log file path
        log_max_bytes: Max log file size before rotation
        log_backup_count: Number of backup files to keep
        app_name: Value of the "app" field on every event
    """
    global _app_name
    _app_name = app_name

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors = shared_processors + [structlog.processors.JSONRenderer()]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        logging.getLogger().addHandler(file_handler)


def setup_logging_from_settings(settings) -> None:
    """Configure logging from a Settings instance."""
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file_path if settings.log_file_enabled else None,
        log_max_bytes=settings.log_file_max_size,
        log_backup_count=settings.log_file_backup_count,
        app_name=settings.app_name,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


def log_key_created(owner_id: str, key_id: str, key_prefix: str, **kwargs) -> None:
    """Log issuance of a new key."""
    get_logger("key_store").info(
        "key_created",
        owner_id=owner_id,
        key_id=key_id,
        key_prefix=key_prefix,
        **kwargs
    )


def log_key_revoked(owner_id: str, key_id: str) -> None:
    """Log revocation of a key."""
    get_logger("key_store").info("key_revoked", owner_id=owner_id, key_id=key_id)


def log_key_updated(owner_id: str, key_id: str, fields: list) -> None:
    """Log a settings update. Only field names are logged, never values."""
    get_logger("key_store").info(
        "key_updated",
        owner_id=owner_id,
        key_id=key_id,
        fields=sorted(fields),
    )


def log_validation_outcome(
    outcome: str,
    stage: str,
    key_id: Optional[str] = None,
    reason: Optional[str] = None,
    required_permission: Optional[str] = None,
    resource_id: Optional[str] = None,
    **kwargs
) -> None:
    """
    Log the outcome of one request validation.

    Args:
        outcome: 'authorized' or 'rejected'
        stage: Last stage reached by the validator
        key_id: Key id when lookup succeeded
        reason: Rejection reason code
        required_permission: Capability the caller asked for
        resource_id: Target resource, if any
        **kwargs: Additional context
    """
    logger = get_logger("validator")
    event = dict(
        stage=stage,
        key_id=key_id,
        required_permission=required_permission,
        resource_id=resource_id,
        **kwargs
    )

    if outcome == "authorized":
        logger.info("validation_authorized", **event)
    else:
        logger.warning("validation_rejected", reason=reason, **event)


def log_rate_limit_exceeded(
    key_id: str,
    tier: str,
    limit_value: int,
    current_count: int,
    retry_after_seconds: int,
) -> None:
    """Log a monthly budget rejection."""
    get_logger("rate_limiter").warning(
        "rate_limit_exceeded",
        key_id=key_id,
        tier=tier,
        limit_value=limit_value,
        current_count=current_count,
        retry_after_seconds=retry_after_seconds,
    )


def log_usage_recorded(
    owner_id: str,
    key_id: str,
    endpoint: str,
    method: str,
    status_code: int,
    monthly_usage_count: Optional[int] = None,
    **kwargs
) -> None:
    """Log a persisted usage record."""
    get_logger("usage").info(
        "usage_recorded",
        owner_id=owner_id,
        key_id=key_id,
        endpoint=endpoint,
        method=method,
        status_code=status_code,
        monthly_usage_count=monthly_usage_count,
        **kwargs
    )


def log_usage_logging_disabled(owner_id: str, key_id: str) -> None:
    """Log an explicit skip of the detailed usage entry."""
    get_logger("usage").info("usage_logging_disabled", owner_id=owner_id, key_id=key_id)


def log_usage_failure(owner_id: str, key_id: str, exception: BaseException) -> None:
    """Log a swallowed usage logging failure."""
    get_logger("usage").error(
        "usage_logging_failed",
        owner_id=owner_id,
        key_id=key_id,
        exception_type=type(exception).__name__,
        exception_message=str(exception),
        exc_info=exception,
    )


def log_exception(
    exception: BaseException,
    context: Optional[Dict[str, Any]] = None,
    **kwargs
) -> None:
    """
    Log exception with full context.

    Args:
        exception: Exception instance
        context: Additional context dictionary
        **kwargs: Additional context
    """
    logger = get_logger("exception")

    log_data = {
        "exception_type": type(exception).__name__,
        "exception_message": str(getattr(exception, "internal_message", exception)),
        **(context or {}),
        **kwargs
    }

    logger.error("exception_occurred", exc_info=exception, **log_data)
