# billing_service/db/resilience.py
# Classification of database failures + bounded retry for transient ones.
#
# Only connection-level failures are retried (SQLSTATE class 08, 53300
# too_many_connections, "connection refused" style driver messages, pool
# checkout timeouts). Statement timeouts are NOT retried: the statement may
# have committed, so the outcome is unknown and surfaces as QueryTimeout.
#
# Usage:
#   @db_retry
#   def get_payment(db: Session, payment_id): ...
#
# The first positional argument of a decorated function must be the Session;
# it is rolled back before each retry.

import logging
from typing import Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from billing_service.core.config import settings
from billing_service.core.errors import BillingError, QueryTimeout, TransientError

logger = logging.getLogger("billing.db")

# ── Classification tables ─────────────────────────────────────────────────────

TRANSIENT_SQLSTATE_PREFIXES = ("08",)        # connection exception class
TRANSIENT_SQLSTATES = {"53300", "57P01", "57P03"}  # too_many_connections, admin_shutdown, cannot_connect_now
TIMEOUT_SQLSTATES = {"57014"}                # query_canceled (statement_timeout)

TRANSIENT_MESSAGES = (
    "connection refused",
    "could not connect",
    "server closed the connection",
    "connection reset",
    "terminating connection",
    "too many clients",
    "connection timed out",
    "connection is closed",
)

TIMEOUT_MESSAGES = (
    "canceling statement due to statement timeout",
    "statement timeout",
)


def _sqlstate(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    # psycopg2 -> pgcode, psycopg 3 / pg8000 -> sqlstate
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def is_timeout_error(exc: BaseException) -> bool:
    if not isinstance(exc, sa_exc.DBAPIError):
        return False
    if _sqlstate(exc) in TIMEOUT_SQLSTATES:
        return True
    message = str(exc).lower()
    return any(m in message for m in TIMEOUT_MESSAGES)


def is_transient_db_error(exc: BaseException) -> bool:
    """True for failures where retrying on a fresh connection is safe."""
    # QueuePool checkout timeout -- nothing was sent to the server
    if isinstance(exc, sa_exc.TimeoutError):
        return True
    if not isinstance(exc, sa_exc.DBAPIError):
        return False
    if is_timeout_error(exc):
        return False
    if exc.connection_invalidated:
        return True

    state = _sqlstate(exc)
    if state:
        if state in TRANSIENT_SQLSTATES or state.startswith(TRANSIENT_SQLSTATE_PREFIXES):
            return True
        return False

    if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError)):
        message = str(exc).lower()
        return any(m in message for m in TRANSIENT_MESSAGES)
    return False


def classify_db_error(exc: BaseException) -> Optional[BillingError]:
    """Map a database exception to a BillingError, or None if it is a real bug."""
    if is_timeout_error(exc):
        return QueryTimeout(
            "Database query timed out; the operation may or may not have completed"
        )
    if is_transient_db_error(exc):
        return TransientError("Database temporarily unavailable, please retry")
    return None


# ── Retry decorator ───────────────────────────────────────────────────────────

def _rollback_before_retry(retry_state) -> None:
    outcome = retry_state.outcome
    logger.warning(
        f"Transient DB error in {retry_state.fn.__name__} "
        f"(attempt {retry_state.attempt_number}): {outcome.exception()}"
    )
    if retry_state.args and isinstance(retry_state.args[0], Session):
        retry_state.args[0].rollback()


db_retry = retry(
    retry=retry_if_exception(is_transient_db_error),
    stop=stop_after_attempt(settings.db_retry_attempts + 1),
    wait=wait_exponential_jitter(
        initial=settings.db_retry_base_delay_seconds,
        max=settings.db_retry_max_delay_seconds,
    ),
    before_sleep=_rollback_before_retry,
    reraise=True,
)
