"""Structured logging for the alert engine using structlog."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor

# Event keys whose values must never reach a log sink
REDACTED_KEYS = frozenset(
    {
        "authorization",
        "bot_token",
        "cron_secret",
        "password",
        "resend_api_key",
        "secret",
        "session_token",
        "telegram_bot_token",
    }
)

SIZE_UNITS = {"KB": 1024, "MB": 1024**2, "GB": 1024**3}

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("apscheduler", "aiohttp.access", "sqlalchemy.engine", "uvicorn.access")


def redact_secrets(logger, method_name: str, event_dict: EventDict) -> EventDict:
    """structlog processor replacing secret values with a marker."""
    for key in event_dict.keys() & REDACTED_KEYS:
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def build_processors(render_json: bool, colors: bool = True) -> list[Processor]:
    """Processor chain shared by console and file output."""
    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="ISO", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if render_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=colors))
    return processors


def setup_logging(
    level: str = "INFO",
    format_type: str = "structured",
    file_enabled: bool = True,
    file_path: str = "data/pulse.log",
    max_file_size: str = "10MB",
    backup_count: int = 5,
) -> None:
    """
    Set up application logging with structlog.

    ``structured`` renders JSON lines, the form log shippers expect from
    the scheduled runs. ``plain`` renders colored console output for local
    development.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format ('structured' or 'plain')
        file_enabled: Whether to also write to a rotating log file
        file_path: Path to log file
        max_file_size: Size before rotation, e.g. ``10MB``
        backup_count: Number of rotated files to keep
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=build_processors(render_json=format_type == "structured"),
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    if file_enabled:
        add_rotating_file_handler(
            file_path, parse_file_size(max_file_size), backup_count, log_level
        )


def add_rotating_file_handler(
    file_path: str, max_bytes: int, backup_count: int, log_level: int
) -> logging.Handler:
    """Attach a rotating file handler to the root logger."""
    log_file = Path(file_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        filename=log_file, maxBytes=max_bytes, backupCount=backup_count
    )
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger().addHandler(handler)
    return handler


def parse_file_size(size: str) -> int:
    """Parse ``512KB``, ``10MB`` or a plain byte count into bytes."""
    size = size.strip().upper()
    for suffix, multiplier in SIZE_UNITS.items():
        if size.endswith(suffix):
            return int(size[: -len(suffix)]) * multiplier
    return int(size)


def setup_logging_from_settings(settings) -> None:
    """Set up logging from the logging section of application settings."""
    setup_logging(
        level=settings.log_level,
        format_type=settings.log_format,
        file_enabled=settings.log_file_enabled,
        file_path=settings.log_file_path,
        max_file_size=settings.log_max_file_size,
        backup_count=settings.log_backup_count,
    )

    if not settings.database_echo_sql:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, named after the calling module by convention."""
    return structlog.get_logger(name)


class LoggerMixin:
    """Mixin class to add structured logging to any class."""

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        return get_logger(self.__class__.__name__)


def mask_secret(value: Optional[str]) -> Dict[str, Any]:
    """Describe a secret by presence and length only."""
    return {"configured": bool(value), "length": len(value) if value else 0}


def log_performance(operation: str, duration_ms: float, **context: Any) -> None:
    """
    Log how long an operation took.

    Args:
        operation: Name of the operation, e.g. ``alert_run``
        duration_ms: Duration in milliseconds
        **context: Additional context
    """
    get_logger("performance").info(
        "Performance metric",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **context,
    )


def log_audit_event(event: str, user_id: str = None, **context: Any) -> None:
    """
    Record an action taken on behalf of a user.

    Args:
        event: Action name, e.g. ``manual_alert_run``
        user_id: ID of the user who triggered the action
        **context: Additional context
    """
    get_logger("audit").info("Audit event", event=event, user_id=user_id, **context)
