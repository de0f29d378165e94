# Overview: Transaction, retry and compare-and-swap helpers shared by every ledger-mutating service.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import event, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import InternalError


def enable_sqlite_immediate_transactions(engine) -> None:
    """
    Make every SQLite transaction start with BEGIN IMMEDIATE.

    pysqlite defers the write lock until the first write, so two writers
    that both read first deadlock on lock upgrade and one gets an
    immediate "database is locked". Taking the RESERVED lock up front
    makes concurrent writers queue on the busy timeout instead.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _retry_policy(attempts: int | None, backoff_base: float | None) -> tuple[int, float]:
    config = current_app.config
    if attempts is None:
        attempts = int(config.get("TX_RETRY_ATTEMPTS", 3))
    if backoff_base is None:
        backoff_base = float(config.get("TX_RETRY_BACKOFF", 0.1))
    return max(attempts, 1), backoff_base


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    attempts, backoff_base = _retry_policy(attempts, backoff_base)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_atomic(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Run `func` as one all-or-nothing transaction.

    Commits when `func` returns, rolls back on any exception before
    re-raising it. Lock contention is retried from scratch, so `func` must
    not depend on state carried over from a failed attempt.
    """
    def _op():
        try:
            result = func()
            db.session.commit()
            return result
        except (OperationalError, StaleDataError):
            raise
        except Exception:
            db.session.rollback()
            raise

    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)


def conditional_update(model, *, where: tuple, values: dict) -> int:
    """
    Compare-and-swap on one or more rows.

    Issues a single UPDATE ... WHERE <where> and returns the number of rows
    it changed. Callers treat zero as "someone else got there first" and
    never read-then-write the same condition.
    """
    stmt = (
        update(model)
        .where(*where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount or 0


def increment_counters(model, row_id: int, **deltas: int) -> None:
    """
    Atomic SQL-side increment of integer columns on a single row.

    The database computes column = column + delta, so concurrent writers
    never lose an update the way a Python-side read-modify-write would.
    """
    values = {name: getattr(model, name) + delta for name, delta in deltas.items()}
    changed = conditional_update(model, where=(model.id == row_id,), values=values)
    if changed != 1:
        raise InternalError(f"{model.__tablename__} row {row_id} vanished during a ledger update")


def conditional_update_returning(model, *, where: tuple, values: dict, returning) -> list:
    """
    Compare-and-swap that reports which rows it changed.

    Same single-statement semantics as conditional_update, with
    UPDATE ... RETURNING so the caller learns exactly what it claimed.
    """
    stmt = (
        update(model)
        .where(*where)
        .values(**values)
        .returning(returning)
        .execution_options(synchronize_session=False)
    )
    return list(db.session.execute(stmt).scalars().all())
