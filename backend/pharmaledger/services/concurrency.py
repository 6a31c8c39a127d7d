# Overview: Transaction helpers shared by the ledger services: row locks, retry and error wrapping.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


PERSISTENCE_CONNECTION = "connection"
PERSISTENCE_TRANSACTION = "transaction"

_CONNECTION_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


class PersistenceError(RuntimeError):
    """
    Infrastructure failure underneath a ledger operation (transient, retryable).

    kind is 'connection' when the store could not be reached or stayed locked,
    'transaction' for any other storage failure. The underlying SQLAlchemy
    error is chained as __cause__.
    """

    def __init__(self, kind: str, message: str | None = None):
        super().__init__(message or f"{kind} failure")
        self.kind = kind


def classify_persistence_error(exc: BaseException) -> str:
    if isinstance(exc, _CONNECTION_ERRORS):
        return PERSISTENCE_CONNECTION
    return PERSISTENCE_TRANSACTION


def lock_for_update(query):
    """
    Apply row-level locking for the read-check-write on stock rows.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write_transaction()
    covers it there.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    On SQLite, take the database write lock up front (BEGIN IMMEDIATE) so that
    two reconciliations cannot both read pre-decrement stock.

    No-op on other dialects, and when the DBAPI connection already has an
    open transaction.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if getattr(raw, "in_transaction", False):
        return
    db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a transactional operation.

    - Any exception rolls the session back before it propagates, so a failed
      operation never leaves partial writes in the session.
    - OperationalError (locks, deadlocks) and StaleDataError (optimistic
      version conflicts) are retried with exponential backoff.
    - IntegrityError propagates as-is for the caller to interpret.
    - Any other SQLAlchemyError that survives the retries is raised as
      PersistenceError.
    """
    if attempts is None:
        attempts = current_app.config.get("STOCK_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("STOCK_RETRY_BACKOFF_SECONDS", 0.1)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise PersistenceError(classify_persistence_error(exc)) from exc
            current_app.logger.warning(
                "Retrying transaction after %s (attempt %d/%d)",
                type(exc).__name__, attempt + 1, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except IntegrityError:
            # Constraint violations are business signals (e.g. a duplicate sale id)
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PersistenceError(classify_persistence_error(exc)) from exc
        except Exception:
            db.session.rollback()
            raise
    raise PersistenceError(PERSISTENCE_TRANSACTION, "no transaction attempts configured")
