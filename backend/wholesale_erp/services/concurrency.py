# Overview: Transaction helpers for service operations: row locking, retry on contention, rollback on failure.

from __future__ import annotations

import logging
import time

from flask import current_app, has_app_context
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import ConflictError

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Versioned rows (version_id_col) still reject the losing writer via StaleDataError.
    """
    return query.with_for_update()


def _retry_settings(attempts, backoff_base):
    if has_app_context():
        if attempts is None:
            attempts = current_app.config.get("LOCK_RETRY_ATTEMPTS", 3)
        if backoff_base is None:
            backoff_base = current_app.config.get("LOCK_RETRY_BACKOFF", 0.1)
    return attempts or 3, 0.1 if backoff_base is None else backoff_base


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation as one unit of work.

    - OperationalError (lock timeouts, deadlocks) and StaleDataError (optimistic
      locking conflicts) roll back and retry with exponential backoff. Once
      attempts are exhausted they surface as a retryable ConflictError.
    - Any other exception rolls back the session and propagates unchanged, so a
      failed operation never leaves partial writes behind.
    """
    # Nested calls join the outermost unit of work; only the outermost retries.
    info = db.session.info
    if info.get("unit_of_work_depth", 0) > 0:
        return func()

    attempts, backoff_base = _retry_settings(attempts, backoff_base)
    for attempt in range(attempts):
        info["unit_of_work_depth"] = 1
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                logger.warning("Giving up after %s attempts: %s", attempts, exc)
                raise ConflictError(
                    "Concurrent update detected, please retry",
                    retryable=True,
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
        finally:
            info["unit_of_work_depth"] = 0


def commit_session() -> None:
    """
    Commit the current unit of work.

    A commit cannot be replayed after rollback (the pending work is gone), so
    contention here is reported as a retryable ConflictError for the caller.
    """
    try:
        db.session.commit()
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        raise ConflictError("Concurrent update detected, please retry", retryable=True) from exc
    except Exception:
        db.session.rollback()
        raise
