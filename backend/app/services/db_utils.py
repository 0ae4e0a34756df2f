"""
Retry and error translation for record store SQL calls.

Transient database failures (locked SQLite file, dropped connection) are
retried with backoff. A primary-key clash on insert means another writer
created the same record first and is reported as a lost compare-and-swap.
Anything else propagates unchanged.
"""
import time
from functools import wraps
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import StoreUnavailable, VersionConflict
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def with_db_retry(
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
    backoff: float = 2.0,
):
    """
    Decorator for functions taking a Session as first argument.

    Args:
        attempts: retries after the first try (default STORE_RETRY_ATTEMPTS)
        delay: initial wait between tries in seconds (default STORE_RETRY_DELAY_SECONDS)
        backoff: multiplier applied to the wait after each failure
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(db: Session, *args, **kwargs) -> T:
            retries = settings.STORE_RETRY_ATTEMPTS if attempts is None else attempts
            wait = settings.STORE_RETRY_DELAY_SECONDS if delay is None else delay

            for attempt in range(retries + 1):
                try:
                    return func(db, *args, **kwargs)
                except IntegrityError as e:
                    _rollback(db)
                    kind, record_id = _record_key(args)
                    logger.info(f"Concurrent insert of {kind} {record_id}: {e.orig}")
                    raise VersionConflict(kind, record_id, 0)
                except OperationalError as e:
                    _rollback(db)
                    if attempt == retries:
                        logger.error(f"{func.__name__} failed after {retries + 1} attempts: {e}")
                        raise StoreUnavailable(f"Record store unavailable: {func.__name__}")
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt + 1}/{retries + 1}), "
                        f"retrying in {wait:.2f}s: {e}"
                    )
                    time.sleep(wait)
                    wait *= backoff

            raise StoreUnavailable(f"Record store unavailable: {func.__name__}")

        return wrapper
    return decorator


def _record_key(args) -> tuple:
    """Best-effort (kind, record_id) for error messages; rows carry both."""
    for arg in args:
        kind = getattr(arg, "kind", None)
        record_id = getattr(arg, "record_id", None)
        if kind and record_id:
            return kind, record_id
    return "record", "?"


def _rollback(db: Session) -> None:
    try:
        db.rollback()
    except OperationalError as e:
        logger.warning(f"Rollback failed: {e}")
