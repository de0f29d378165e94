# Overview: Service-layer operations for the key transfer log; append, reconcile and export.

from __future__ import annotations

import csv
import io
from typing import Optional
from datetime import datetime

from sqlalchemy import func, or_

from ..extensions import db
from ..errors import InvalidArgumentError, NotFoundError
from ..models import Account, Key, KeyTransferLog
from ..models.ledger import LOG_TYPES, LOG_STATUS_COMPLETED
from keyflow.time_utils import to_utc_z
"""
Key Transfer Log Invariants (authoritative)

- Append-only: there is no update or delete API in this module.
- Entries are written inside the same DB transaction as the key and counter
  mutations they record (flush here, the caller commits).
- One entry per completed ledger movement, carrying its key count.
- Summing entries per account reproduces that account's received and
  transferred counters.
"""

DIRECTION_IN = "in"
DIRECTION_OUT = "out"

CSV_FIELDS = ["id", "date", "type", "status", "from_account_id", "to_account_id", "child_id", "count", "notes", "reference"]


def append_transfer_log(
    *,
    log_type: str,
    count: int,
    from_account_id: int | None = None,
    to_account_id: int | None = None,
    child_id: int | None = None,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> KeyTransferLog:
    """
    Append-only transfer log entry.

    - No domain logic here.
    - No deletes/updates of existing entries.
    - date is business time; if None, db default applies.
    """
    if log_type not in LOG_TYPES:
        raise InvalidArgumentError(f"Unknown transfer log type {log_type!r}")
    if count <= 0:
        raise InvalidArgumentError("Transfer log count must be positive")

    entry = KeyTransferLog(
        from_account_id=from_account_id,
        to_account_id=to_account_id,
        child_id=child_id,
        count=count,
        status=LOG_STATUS_COMPLETED,
        type=log_type,
        notes=notes[:255] if notes else notes,
        reference=reference,
        date=occurred_at,
    )
    db.session.add(entry)
    db.session.flush()  # ensures entry.id is assigned without committing
    return entry


def live_pool_size(account_id: int) -> int:
    """Ground truth: keys owned by the account and not consumed."""
    return (
        db.session.query(func.count(Key.id))
        .filter(Key.current_owner_id == account_id, Key.is_assigned.is_(False))
        .scalar()
    ) or 0


def reconcile_account(account_id: int) -> dict:
    """
    Compare an account's counters with the key store and the transfer log.

    consistent is True when
      received - transferred == live pool
      received == sum of inbound log counts
      transferred == sum of outbound log counts
    """
    account = db.session.get(Account, account_id)
    if not account:
        raise NotFoundError(f"Account {account_id} not found")

    pool = live_pool_size(account_id)
    logged_in = (
        db.session.query(func.coalesce(func.sum(KeyTransferLog.count), 0))
        .filter(KeyTransferLog.to_account_id == account_id)
        .scalar()
    )
    logged_out = (
        db.session.query(func.coalesce(func.sum(KeyTransferLog.count), 0))
        .filter(KeyTransferLog.from_account_id == account_id)
        .scalar()
    )

    balance = account.received_keys - account.transferred_keys
    return {
        "account_id": account.id,
        "role": account.role,
        "received_keys": account.received_keys,
        "transferred_keys": account.transferred_keys,
        "balance": balance,
        "live_pool": pool,
        "logged_in": int(logged_in),
        "logged_out": int(logged_out),
        "consistent": (
            balance == pool
            and account.received_keys == int(logged_in)
            and account.transferred_keys == int(logged_out)
        ),
    }


def reconcile_all() -> list[dict]:
    """Reconcile every account; used by the CLI audit."""
    ids = [row[0] for row in db.session.query(Account.id).order_by(Account.id).all()]
    return [reconcile_account(account_id) for account_id in ids]


def _logs_query(account_id: int, direction: str | None):
    query = db.session.query(KeyTransferLog)
    if direction == DIRECTION_IN:
        query = query.filter(KeyTransferLog.to_account_id == account_id)
    elif direction == DIRECTION_OUT:
        query = query.filter(KeyTransferLog.from_account_id == account_id)
    elif direction is None:
        query = query.filter(
            or_(KeyTransferLog.to_account_id == account_id, KeyTransferLog.from_account_id == account_id)
        )
    else:
        raise InvalidArgumentError("direction must be 'in', 'out' or omitted")
    return query.order_by(KeyTransferLog.date.desc(), KeyTransferLog.id.desc())


def list_transfer_logs(account_id: int, *, direction: str | None = None, limit: int = 100) -> list[KeyTransferLog]:
    return _logs_query(account_id, direction).limit(limit).all()


def export_transfer_logs_csv(account_id: int, *, direction: str | None = None) -> str:
    """Read-only CSV rendering of the account's transfer log."""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS)
    writer.writeheader()
    for entry in _logs_query(account_id, direction).all():
        row = entry.to_dict()
        row["date"] = to_utc_z(entry.date)
        writer.writerow({field: row.get(field) for field in CSV_FIELDS})
    return buffer.getvalue()
