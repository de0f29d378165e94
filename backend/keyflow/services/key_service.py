# Overview: Service-layer operations for the key store; minting, lookups and inventory queries.

"""
Key store service.

Minting is the only place keys are created. Everything else in this module
is read-only: the transfer engine, the request workflow and activation own
every write to current_owner_id, is_assigned and the account counters.
"""
from __future__ import annotations

import secrets

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import AccessDeniedError, InvalidArgumentError, NotFoundError, InternalError
from ..models import Account, Key
from ..models.accounts import ROLE_ADMIN
from ..models.ledger import LOG_TYPE_GENERATE
from .concurrency import run_atomic, increment_counters
from .ledger_service import append_transfer_log, live_pool_size
from keyflow.time_utils import utcnow, validity_horizon


MAX_KEY_LENGTH = 64
MAX_GENERATE_COUNT = 10_000
MAX_COLLISION_RETRIES = 8


def require_positive_int(value, field: str) -> int:
    """Reject bools, floats and numeric strings; counts are plain integers."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(f"{field} must be a positive integer")
    if value <= 0:
        raise InvalidArgumentError(f"{field} must be a positive integer")
    return value


def generate_token(key_length: int) -> str:
    """Random lowercase hex token of exactly key_length characters."""
    return secrets.token_hex((key_length + 1) // 2)[:key_length]


def _unique_token(key_length: int, taken: set[str]) -> str:
    for _ in range(MAX_COLLISION_RETRIES):
        token = generate_token(key_length)
        if token in taken:
            continue
        exists = db.session.query(Key.id).filter_by(token=token).first()
        if not exists:
            taken.add(token)
            return token
    raise InternalError(
        f"Could not find a free {key_length}-character token; use a longer key_length"
    )


def generate_keys(admin_id: int, count, key_length=None) -> list[Key]:
    """
    Mint `count` new keys owned by the generating admin.

    Each key gets a unique random hex token and the configured validity
    horizon. The admin's total_generated and received_keys grow by `count`
    and one `generate` log entry is appended, all in one transaction.

    Raises:
        InvalidArgumentError: bad count / key_length
        NotFoundError: unknown admin
        AccessDeniedError: caller is not an admin
    """
    if key_length is None:
        key_length = current_app.config.get("DEFAULT_KEY_LENGTH", 16)
    count = require_positive_int(count, "count")
    key_length = require_positive_int(key_length, "key_length")
    if key_length > MAX_KEY_LENGTH:
        raise InvalidArgumentError(f"key_length must be at most {MAX_KEY_LENGTH}")
    if count > MAX_GENERATE_COUNT:
        raise InvalidArgumentError(f"count must be at most {MAX_GENERATE_COUNT}")

    validity_days = current_app.config.get("KEY_VALIDITY_DAYS", 730)

    def _op():
        admin = db.session.get(Account, admin_id)
        if not admin:
            raise NotFoundError(f"Account {admin_id} not found")
        if admin.role != ROLE_ADMIN:
            raise AccessDeniedError("Only admins can generate keys")

        valid_until = validity_horizon(validity_days)
        taken: set[str] = set()
        keys = [
            Key(
                token=_unique_token(key_length, taken),
                current_owner_id=admin.id,
                generated_by_id=admin.id,
                is_assigned=False,
                valid_until=valid_until,
            )
            for _ in range(count)
        ]
        db.session.add_all(keys)
        db.session.flush()

        increment_counters(
            Account,
            admin.id,
            total_generated=count,
            received_keys=count,
            assigned_keys=count,
        )
        append_transfer_log(
            log_type=LOG_TYPE_GENERATE,
            count=count,
            to_account_id=admin.id,
            notes=f"Generated {count} keys of length {key_length}",
        )
        return keys

    # A concurrent minter can still win a token between check and insert;
    # the unique constraint catches it and the whole batch is re-rolled.
    for attempt in range(MAX_COLLISION_RETRIES):
        try:
            return run_atomic(_op)
        except IntegrityError:
            if attempt >= MAX_COLLISION_RETRIES - 1:
                raise InternalError("Key generation kept colliding with existing tokens")
    raise InternalError("Key generation failed")


def get_key(token: str) -> Key:
    if not token:
        raise InvalidArgumentError("key is required")
    key = db.session.query(Key).filter_by(token=token).first()
    if not key:
        raise NotFoundError("Key not found")
    return key


def get_key_info(token: str) -> dict:
    """Public key lookup: validity, consumption state and assigned child."""
    key = get_key(token)
    info = key.to_dict()
    child = key.assigned_to
    info["assigned_to"] = {"id": child.id, "name": child.name} if child else None
    return info


def list_pool(account_id: int, *, limit: int | None = None) -> list[Key]:
    """Available (owned, not consumed) keys of an account, oldest first."""
    query = (
        db.session.query(Key)
        .filter(Key.current_owner_id == account_id, Key.is_assigned.is_(False))
        .order_by(Key.created_at.asc(), Key.id.asc())
    )
    if limit:
        query = query.limit(limit)
    return query.all()


def key_status(account_id: int) -> dict:
    """
    Balance view for an account plus what each direct subordinate received.
    """
    account = db.session.get(Account, account_id)
    if not account:
        raise NotFoundError(f"Account {account_id} not found")

    subordinates = (
        db.session.query(Account)
        .filter(Account.created_by_id == account_id, Account.received_keys > 0)
        .order_by(Account.id)
        .all()
    )
    return {
        "received_keys": account.received_keys,
        "transferred_keys": account.transferred_keys,
        "balance": account.balance,
        "pool": live_pool_size(account_id),
        "transferred_to": [
            {"id": sub.id, "name": sub.name, "role": sub.role, "count": sub.received_keys}
            for sub in subordinates
        ],
    }


def inventory_summary() -> dict:
    """
    System-wide key counts: minted, still with admins, distributed below
    admins, consumed, and expired-but-unused.
    """
    now = utcnow()
    admin_ids = [row[0] for row in db.session.query(Account.id).filter_by(role=ROLE_ADMIN).all()]

    total = db.session.query(func.count(Key.id)).scalar() or 0
    consumed = db.session.query(func.count(Key.id)).filter(Key.is_assigned.is_(True)).scalar() or 0
    with_admins = 0
    if admin_ids:
        with_admins = (
            db.session.query(func.count(Key.id))
            .filter(Key.current_owner_id.in_(admin_ids), Key.is_assigned.is_(False))
            .scalar()
        ) or 0
    expired_unused = (
        db.session.query(func.count(Key.id))
        .filter(Key.is_assigned.is_(False), Key.valid_until < now)
        .scalar()
    ) or 0

    distributed = total - with_admins
    admins = db.session.query(Account).filter_by(role=ROLE_ADMIN).order_by(Account.id).all()
    return {
        "total_generated": total,
        "with_admins": with_admins,
        "distributed": distributed,
        "consumed": consumed,
        "expired_unused": expired_unused,
        "transfer_progress": round((distributed / total) * 100, 1) if total else 0,
        "admins": [
            {
                "id": admin.id,
                "name": admin.name,
                "total_generated": admin.total_generated,
                "transferred_keys": admin.transferred_keys,
            }
            for admin in admins
        ],
    }
