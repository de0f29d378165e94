# backend/keyflow/services/transfer_service.py
"""
Key transfer engine.

WHY: Keys move down a fixed hierarchy and every move must land as one
unit: key ownership, both account counters and the transfer log entry.

GATE: the first statement of every transfer is a single conditional UPDATE
that re-points the oldest available keys of the sender. Its rowcount is
the only inventory check that matters; if it changed fewer rows than
requested the transaction is rolled back and nothing is observable.
Counter increments are SQL-side (column = column + n) in the same
transaction, never Python read-modify-write.

ADJACENCY (static, consulted once per transfer):
    admin -> nd -> ss -> db -> retailer -> parent
The recipient must have the next role down and, unless it is an orphan
(created_by_id NULL), must have been created by the sender.
retailer -> parent is excluded from the bulk primitive; it goes through
hand_over_key (request approval / create-parent), one key at a time.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select

from ..extensions import db
from ..errors import (
    AccessDeniedError,
    InsufficientInventoryError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
)
from ..models import Account, Key, KeyTransferLog
from ..models.accounts import ROLE_ADMIN, ROLE_ND, ROLE_SS, ROLE_DB, ROLE_RETAILER, ROLE_PARENT
from ..models.ledger import LOG_TYPE_BULK, LOG_TYPE_DISTRIBUTE
from .concurrency import run_atomic, conditional_update, conditional_update_returning, increment_counters
from .key_service import require_positive_int
from . import notification_service
from .ledger_service import append_transfer_log, live_pool_size


ROLE_ADJACENCY = {
    ROLE_ADMIN: ROLE_ND,
    ROLE_ND: ROLE_SS,
    ROLE_SS: ROLE_DB,
    ROLE_DB: ROLE_RETAILER,
    ROLE_RETAILER: ROLE_PARENT,
}

# Roles that may not use the bulk primitive even though they have a next role
UNIT_ONLY_ROLES = {ROLE_RETAILER}

MAX_NOTES_LENGTH = 255


@dataclass
class TransferResult:
    from_account_id: int
    to_account_id: int
    count: int
    log: KeyTransferLog
    tokens: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "from_account_id": self.from_account_id,
            "to_account_id": self.to_account_id,
            "transferred": self.count,
            "keys": self.tokens,
            "log": self.log.to_dict(),
        }


def next_role(role: str) -> str | None:
    return ROLE_ADJACENCY.get(role)


def check_adjacency(sender: Account, recipient: Account) -> None:
    """
    Raise AccessDeniedError unless `recipient` sits directly below `sender`.
    """
    if sender.id == recipient.id:
        raise AccessDeniedError("Cannot transfer keys to yourself")

    expected = ROLE_ADJACENCY.get(sender.role)
    if expected is None or recipient.role != expected:
        raise AccessDeniedError(
            f"Access denied: {sender.role} cannot transfer keys to {recipient.role} directly."
        )

    if recipient.created_by_id is not None and recipient.created_by_id != sender.id:
        raise AccessDeniedError("Access denied: Cannot transfer keys to a non-direct subordinate.")


def oldest_available_ids(owner_id: int, limit: int):
    """SELECT of the owner's available key ids, oldest first."""
    return (
        select(Key.id)
        .where(Key.current_owner_id == owner_id, Key.is_assigned.is_(False))
        .order_by(Key.created_at.asc(), Key.id.asc())
        .limit(limit)
    )


def claim_keys(owner_id: int, count: int, values: dict) -> list[int]:
    """
    Gate: atomically claim up to `count` of the owner's oldest available
    keys, applying `values` to them. Returns the ids actually claimed.

    Each round is one conditional UPDATE ... RETURNING that re-checks
    ownership and availability, so a key taken by a racing caller is simply
    not returned. Rounds repeat until `count` keys are held or the pool is
    empty; the caller decides whether a short claim is an error.
    """
    claimed: list[int] = []
    while len(claimed) < count:
        ids = conditional_update_returning(
            Key,
            where=(
                Key.id.in_(oldest_available_ids(owner_id, count - len(claimed))),
                Key.current_owner_id == owner_id,
                Key.is_assigned.is_(False),
            ),
            values=values,
            returning=Key.id,
        )
        if not ids:
            break
        claimed.extend(ids)
    return claimed


def claim_specific_key(key_id: int, owner_id: int, values: dict) -> bool:
    """Gate for a named key: claim it only if the owner still holds it unconsumed."""
    return conditional_update(
        Key,
        where=(
            Key.id == key_id,
            Key.current_owner_id == owner_id,
            Key.is_assigned.is_(False),
        ),
        values=values,
    ) == 1


def _clean_notes(notes) -> str | None:
    if notes is None:
        return None
    if not isinstance(notes, str):
        raise InvalidArgumentError("notes must be a string")
    notes = notes.strip()
    if len(notes) > MAX_NOTES_LENGTH:
        raise InvalidArgumentError(f"notes must be at most {MAX_NOTES_LENGTH} characters")
    return notes or None


def _load_pair(from_account_id: int, to_account_id: int) -> tuple[Account, Account]:
    sender = db.session.get(Account, from_account_id)
    if not sender:
        raise NotFoundError(f"Account {from_account_id} not found")
    recipient = db.session.get(Account, to_account_id)
    if not recipient:
        raise NotFoundError(f"Recipient account {to_account_id} not found")
    return sender, recipient


def transfer_keys(
    from_account_id: int,
    to_account_id: int,
    count,
    *,
    notes: str | None = None,
    reference: str | None = None,
) -> TransferResult:
    """
    Move `count` keys from one account's pool to a direct subordinate's.

    Args:
        from_account_id: Sender (admin, nd, ss or db)
        to_account_id: Recipient, one role below the sender
        count: Positive number of keys
        notes: Optional free-text note for the log entry
        reference: Optional caller reference stored on the log entry

    Returns:
        TransferResult: the log entry and moved tokens

    Raises:
        InvalidArgumentError: count is not a positive integer or notes is not a string
        NotFoundError: either account is unknown
        AccessDeniedError: roles are not adjacent / not a direct subordinate,
            or the sender may only hand over single keys
        InsufficientInventoryError: fewer than `count` keys available
    """
    count = require_positive_int(count, "count")
    notes = _clean_notes(notes)

    def _op():
        sender, recipient = _load_pair(from_account_id, to_account_id)
        check_adjacency(sender, recipient)
        if sender.role in UNIT_ONLY_ROLES:
            raise AccessDeniedError(
                "Retailers hand out individual keys through key requests or parent creation, "
                "not bulk transfers."
            )

        available = live_pool_size(sender.id)
        if count > available:
            raise InsufficientInventoryError(
                f"Cannot transfer {count} keys. Only {available} unassigned keys available for this account.",
                details={"requested": count, "available": available},
            )

        moved = claim_keys(sender.id, count, {"current_owner_id": recipient.id})
        if len(moved) != count:
            # Lost a race after the pool check; run_atomic rolls the partial claim back
            raise InsufficientInventoryError(
                f"Cannot transfer {count} keys. Only {len(moved)} unassigned keys available for this account.",
                details={"requested": count, "available": len(moved)},
            )

        increment_counters(Account, sender.id, transferred_keys=count, used_keys=count)
        increment_counters(Account, recipient.id, received_keys=count, assigned_keys=count)

        log = append_transfer_log(
            log_type=LOG_TYPE_BULK,
            count=count,
            from_account_id=sender.id,
            to_account_id=recipient.id,
            notes=notes or f"Bulk transferred {count} keys from {sender.role} to {recipient.role}: {recipient.name}",
            reference=reference,
        )

        tokens = [
            row[0]
            for row in db.session.query(Key.token)
            .filter(Key.id.in_(moved))
            .order_by(Key.created_at.asc(), Key.id.asc())
            .all()
        ]
        return TransferResult(
            from_account_id=sender.id,
            to_account_id=recipient.id,
            count=count,
            log=log,
            tokens=tokens,
        )

    result = run_atomic(_op)

    notification_service.notify(
        result.to_account_id,
        notification_service.KIND_KEYS_RECEIVED,
        f"You received {result.count} keys from account {result.from_account_id}",
        reference=f"transfer_log:{result.log.id}",
    )
    return result


def hand_over_key(
    retailer: Account,
    parent: Account,
    *,
    key_token: str | None = None,
    reference: str | None = None,
) -> Key:
    """
    Move exactly one key from a retailer's pool to a parent's pool.

    Runs inside the caller's transaction (no commit). With `key_token` the
    named key is claimed only if it is still available and owned by the
    retailer; otherwise the retailer's oldest available key is claimed.

    Raises:
        NotFoundError: key_token does not exist
        InvalidStateError: the named key is consumed or owned by someone else
        InsufficientInventoryError: the retailer has no available key
    """
    values = {"current_owner_id": parent.id}
    if key_token:
        key = db.session.query(Key).filter_by(token=key_token).first()
        if not key:
            raise NotFoundError("Key not found")
        if not claim_specific_key(key.id, retailer.id, values):
            raise InvalidStateError("Key is already assigned or is not owned by this retailer")
        key_id = key.id
    else:
        claimed = claim_keys(retailer.id, 1, values)
        if not claimed:
            raise InsufficientInventoryError("No available keys to assign")
        key_id = claimed[0]

    increment_counters(Account, retailer.id, transferred_keys=1, used_keys=1)
    increment_counters(Account, parent.id, received_keys=1, assigned_keys=1)

    append_transfer_log(
        log_type=LOG_TYPE_DISTRIBUTE,
        count=1,
        from_account_id=retailer.id,
        to_account_id=parent.id,
        notes=f"Key assigned to parent: {parent.name}",
        reference=reference,
    )

    key = db.session.get(Key, key_id)
    db.session.refresh(key)
    return key
