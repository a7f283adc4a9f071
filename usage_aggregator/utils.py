"""Utility functions for usage aggregation."""

import logging
import re
import unicodedata
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

import numpy as np
import structlog


def setup_logging(level: str = "INFO", log_format: str = "console"):
    """Set up structured logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Format type ("console" or "json")
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        processors = [
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name

    Returns:
        Structured logger
    """
    return structlog.get_logger(name)


def slugify(value: Optional[str]) -> str:
    """Convert a project title into its slug form.

    The title is NFKD-normalized and folded to ASCII, punctuation is dropped,
    runs of whitespace, underscores and dashes collapse into one dash, and
    leading/trailing dashes are trimmed.

    Args:
        value: Title or project name

    Returns:
        Lower-case hyphenated slug ('' for empty input)
    """
    if not value:
        return ""

    base = unicodedata.normalize("NFKD", str(value))
    base = base.encode("ascii", "ignore").decode("ascii")
    base = re.sub(r"[^\w\s-]", "", base).strip()
    base = re.sub(r"[\s_-]+", "-", base)
    return base.strip("-").lower()


def safe_sum(*values: Optional[float]) -> float:
    """Sum values, treating None as 0.

    Args:
        *values: Variable number of numeric values or None

    Returns:
        Sum of values
    """
    return sum(v for v in values if v is not None)


def safe_max(values: Iterable[Optional[float]]) -> Optional[float]:
    """Get maximum value, ignoring None values.

    Args:
        values: Numeric values or None

    Returns:
        Maximum value or None if all are None
    """
    filtered = [v for v in values if v is not None]
    return max(filtered) if filtered else None


def safe_mean(values: Iterable[Optional[float]]) -> Optional[float]:
    """Average values, ignoring None values.

    Args:
        values: Numeric values or None

    Returns:
        Arithmetic mean or None if all are None
    """
    filtered = [v for v in values if v is not None]
    if not filtered:
        return None
    return sum(filtered) / len(filtered)


def to_number(value: Any) -> Optional[float]:
    """Convert a database/pandas scalar into a plain Python number.

    NUMERIC columns come back as Decimal and pandas hands out NaN for
    missing values; both are normalized here.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        value = float(value)
    elif isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def parse_date(date_str: str) -> date:
    """Parse date string in YYYY-MM-DD format.

    Args:
        date_str: Date string

    Returns:
        Date object
    """
    return datetime.strptime(date_str, "%Y-%m-%d").date()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    return ensure_utc(parsed)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class PerformanceTimer:
    """Context manager for timing code execution."""

    def __init__(self, name: str, logger: Optional[structlog.BoundLogger] = None):
        """Initialize timer.

        Args:
            name: Name of the timed operation
            logger: Logger instance (optional)
        """
        self.name = name
        self.logger = logger or get_logger("performance")
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        """Start timer."""
        self.start_time = datetime.now()
        self.logger.info(f"Starting: {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Stop timer and log duration."""
        self.end_time = datetime.now()
        duration = (self.end_time - self.start_time).total_seconds()

        if exc_type is None:
            self.logger.info(
                f"Completed: {self.name}",
                duration_seconds=round(duration, 3)
            )
        else:
            self.logger.error(
                f"Failed: {self.name}",
                duration_seconds=round(duration, 3),
                error=str(exc_val)
            )

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds.

        Returns:
            Duration in seconds or None if timer hasn't finished
        """
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


def format_duration(seconds: float) -> str:
    """Format duration as human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2.3s", "1m 30s", "1h 15m")
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"
