from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from retail_ops.config import Config
from retail_ops.errors import StoreUnavailable
from retail_ops.observability import increment_counter

T = TypeVar("T")

logger = logging.getLogger(__name__)


def is_transient_store_error(exc: BaseException) -> bool:
    """True for connection-level failures worth retrying, False for data errors."""
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


def with_store_retry(
    operation: Callable[[], T],
    session: Optional[Session] = None,
    retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a read against the store, retrying transient failures with exponential backoff.

    Non-transient errors propagate untouched. Once the retry budget is spent the
    failure surfaces as StoreUnavailable so callers answer 503, never a denial.
    """
    retries = Config.STORE_RETRY_ATTEMPTS if retries is None else retries
    base_delay = Config.STORE_RETRY_BASE_DELAY if base_delay is None else base_delay

    attempt = 0
    while True:
        try:
            return operation()
        except Exception as exc:
            if not is_transient_store_error(exc):
                raise
            if session is not None:
                session.rollback()
            increment_counter("store_transient_errors_total")
            if attempt >= retries:
                logger.error("Store unavailable after %s attempt(s)", attempt + 1, exc_info=True)
                raise StoreUnavailable() from exc
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "Transient store error, retrying in %.2fs", delay, extra={"attempt": attempt + 1}
            )
            sleep(delay)
            attempt += 1


def commit_or_unavailable(session: Session) -> None:
    """Commit, translating connection failures into StoreUnavailable."""
    try:
        session.commit()
    except Exception as exc:
        session.rollback()
        if is_transient_store_error(exc):
            increment_counter("store_transient_errors_total")
            raise StoreUnavailable() from exc
        raise
