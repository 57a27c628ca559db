import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from croniter import croniter
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dr_engine.config import settings
from dr_engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors considered transient on read paths (metrics, lag polling, storage reads).
# Unreachable regions surface from the database drivers as OperationalError.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
    OperationalError,
    InterfaceError,
    DisconnectionError,
    PoolTimeoutError,
)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def validate_cron(expr: str) -> str:
    expr = (expr or "").strip()
    if len(expr.split()) != 5 or not croniter.is_valid(expr):
        raise ConfigurationError(f"Invalid cron expression: {expr!r}")
    return expr


def next_cron_time(expr: str, after: datetime) -> datetime:
    """Next fire time strictly after ``after`` (UTC)."""
    return as_utc(croniter(expr, as_utc(after)).get_next(datetime))


def call_with_read_retry(fn: Callable[..., T], *args: Any, description: str = "read", **kwargs: Any) -> T:
    """Run a read-path call with bounded exponential backoff.

    Only read paths go through here; writes are never retried.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max(1, settings.read_retry_attempts)),
        wait=wait_exponential(multiplier=0.1, max=settings.read_retry_max_wait_seconds),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            return fn(*args, **kwargs)
    raise RuntimeError(f"unreachable: {description}")
