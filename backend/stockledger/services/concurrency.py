# Overview: Transaction, row-lock and retry helpers shared by every ledger write.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..exceptions import TransactionFailure
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, see begin_write().
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Take the database write lock before the first read of a read-check-write.

    SQLite has no row locks; BEGIN IMMEDIATE serializes writers instead, so two
    deductions cannot both pass the availability check on a stale balance.
    Must be the first statement of the transaction.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_in_transaction(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute func as one unit of work: commit on success, roll back on any failure.

    - Concurrency conflicts (OperationalError, StaleDataError) are retried with
      exponential backoff, then surface as TransactionFailure.
    - Any other storage error surfaces as TransactionFailure.
    - Domain errors propagate unchanged after the rollback.

    func must re-read everything it touches; it runs again on retry.
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)

    for attempt in range(attempts):
        try:
            result = func()
            db.session.commit()
            return result
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise TransactionFailure(
                    "Storage conflict; operation rolled back",
                    details={"cause": type(exc).__name__},
                ) from exc
            current_app.logger.warning(
                "Retrying ledger transaction after %s (attempt %d of %d)",
                type(exc).__name__, attempt + 1, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise TransactionFailure(
                "Storage error; operation rolled back",
                details={"cause": type(exc).__name__},
            ) from exc
        except Exception:
            db.session.rollback()
            raise
