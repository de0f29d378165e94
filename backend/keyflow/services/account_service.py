# Overview: Service-layer operations for the account hierarchy; create, look up, list and remove.

"""
Account Directory

HIERARCHY: each role may only create the role directly below it
(admin > nd > ss > db > retailer > parent). Admins are bootstrapped from
the CLI with no creator.

REMOVAL is a compensating transaction. Nothing a removed account held is
lost:
- available keys go back to the admin that generated them
  (reclaimed_at stamped, one `reclaim` log entry per admin)
- consumed keys are re-pointed at their generating admin, still consumed
- direct subordinates become orphans (created_by_id NULL)
- children keep their key but lose their parent link
- pending key requests from or to the account are denied
Every step runs in one transaction with the final DELETE.

STATUS: an account is active, inactive or blocked. Only active accounts can
log in; moving an account out of active revokes its live sessions. Keys and
counters are untouched by status changes.
"""
from __future__ import annotations

import re

from flask import current_app
from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    AccessDeniedError,
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
)
from ..models import Account, Child, Key, KeyRequest, Notification, SessionToken
from ..models.accounts import ACCOUNT_STATUSES, ROLE_ADMIN, ROLE_PARENT, ROLE_RETAILER, ROLES
from ..models.keys import KEY_REQUEST_DENIED, KEY_REQUEST_PENDING
from ..models.ledger import LOG_TYPE_RECLAIM
from . import auth_service
from .concurrency import run_atomic, conditional_update, increment_counters
from .ledger_service import append_transfer_log
from .transfer_service import ROLE_ADJACENCY, hand_over_key
from keyflow.time_utils import utcnow


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PROFILE_FIELDS = ("name", "email", "phone", "address")


def require_account(account_id: int, role: str | None = None) -> Account:
    """Load an account, optionally insisting on its role."""
    account = db.session.get(Account, account_id)
    if not account:
        raise NotFoundError(f"Account {account_id} not found")
    if role is not None and account.role != role:
        raise AccessDeniedError(f"Only {role} accounts can do this")
    return account


def _clean_profile(profile: dict) -> dict:
    name = profile.get("name")
    if not isinstance(name, str) or not name.strip():
        raise InvalidArgumentError("name is required")

    email = profile.get("email")
    if not isinstance(email, str) or not EMAIL_PATTERN.match(email.strip()):
        raise InvalidArgumentError("A valid email is required")

    cleaned = {"name": name.strip(), "email": email.strip().lower()}
    for field in ("phone", "address"):
        value = profile.get(field)
        if value is not None and not isinstance(value, str):
            raise InvalidArgumentError(f"{field} must be a string")
        cleaned[field] = value.strip() if value else None
    return cleaned


def _password_hash(password) -> tuple[str, str | None]:
    """Returns (hash, generated_plaintext_or_None)."""
    generated = None
    if password is None:
        generated = password = auth_service.generate_password()
    return auth_service.hash_password(password), generated


def _check_creator(creator: Account | None, role: str) -> None:
    if creator is None:
        if role != ROLE_ADMIN:
            raise AccessDeniedError("Only admin accounts can be created without a creator")
        return
    if ROLE_ADJACENCY.get(creator.role) != role:
        raise AccessDeniedError(f"{creator.role} accounts cannot create {role} accounts")


def _insert_account(creator: Account | None, role: str, profile: dict, password_hash: str) -> Account:
    if db.session.query(Account.id).filter(Account.email == profile["email"]).first():
        raise ConflictError("An account with this email already exists")

    account = Account(
        role=role,
        created_by_id=creator.id if creator else None,
        password_hash=password_hash,
        status="active",
        is_active=True,
        **profile,
    )
    db.session.add(account)
    db.session.flush()
    return account


def create_account(creator_id: int | None, role: str, profile: dict, *, password=None) -> tuple[Account, str | None]:
    """
    Create an account one level below its creator.

    Args:
        creator_id: Creating account, or None for the admin bootstrap
        role: Role of the new account
        profile: name, email and optional phone / address
        password: Optional; a strong password is generated when omitted

    Returns:
        (account, generated_password). The generated password is only
        ever returned here.

    Raises:
        InvalidArgumentError: unknown role, bad profile or weak password
        AccessDeniedError: creator may not create this role
        ConflictError: email already registered
    """
    if role not in ROLES:
        raise InvalidArgumentError(f"role must be one of {', '.join(ROLES)}")
    cleaned = _clean_profile(profile or {})
    password_hash, generated = _password_hash(password)

    def _op():
        creator = require_account(creator_id) if creator_id is not None else None
        _check_creator(creator, role)
        return _insert_account(creator, role, cleaned, password_hash)

    try:
        account = run_atomic(_op)
    except IntegrityError:
        raise ConflictError("An account with this email already exists")
    return account, generated


def create_parent(retailer_id: int, profile: dict, *, key_token: str | None = None, password=None) -> tuple[Account, str | None, Key]:
    """
    Create a parent under a retailer and hand it exactly one key.

    The key moves with the same primitive as request approval. If no key
    can be handed over the parent is not created either.
    """
    cleaned = _clean_profile(profile or {})
    password_hash, generated = _password_hash(password)

    def _op():
        retailer = require_account(retailer_id, ROLE_RETAILER)
        parent = _insert_account(retailer, ROLE_PARENT, cleaned, password_hash)
        key = hand_over_key(retailer, parent, key_token=key_token, reference=f"parent:{parent.id}")
        return parent, key

    try:
        parent, key = run_atomic(_op)
    except IntegrityError:
        raise ConflictError("An account with this email already exists")

    current_app.logger.info("Retailer %s created parent %s with key %s", retailer_id, parent.id, key.id)
    return parent, generated, key


def get_account(account_id: int) -> Account:
    return require_account(account_id)


def list_subordinates(account_id: int, role: str | None = None) -> list[Account]:
    if role is not None and role not in ROLES:
        raise InvalidArgumentError(f"role must be one of {', '.join(ROLES)}")
    query = db.session.query(Account).filter(Account.created_by_id == account_id)
    if role:
        query = query.filter(Account.role == role)
    return query.order_by(Account.created_at.desc(), Account.id.desc()).all()


def _reclaim_pool(account: Account, now) -> dict[int, int]:
    """Return every available key of `account` to its generating admin."""
    per_admin = (
        db.session.query(Key.generated_by_id, func.count(Key.id))
        .filter(Key.current_owner_id == account.id, Key.is_assigned.is_(False))
        .group_by(Key.generated_by_id)
        .order_by(Key.generated_by_id)
        .all()
    )
    reclaimed = {}
    for admin_id, _ in per_admin:
        moved = conditional_update(
            Key,
            where=(
                Key.current_owner_id == account.id,
                Key.is_assigned.is_(False),
                Key.generated_by_id == admin_id,
            ),
            values={"current_owner_id": admin_id, "reclaimed_at": now},
        )
        if not moved:
            continue
        increment_counters(Account, admin_id, received_keys=moved, assigned_keys=moved)
        append_transfer_log(
            log_type=LOG_TYPE_RECLAIM,
            count=moved,
            from_account_id=account.id,
            to_account_id=admin_id,
            notes=f"Reclaimed {moved} keys from removed {account.role}: {account.name}",
            reference=f"account:{account.id}",
        )
        reclaimed[admin_id] = moved
    return reclaimed


def remove_account(actor_id: int, account_id: int) -> dict:
    """
    Remove an account and compensate everything that pointed at it.

    Raises:
        NotFoundError: unknown actor or account
        AccessDeniedError: admins cannot be removed; only the creator or
            an admin may remove an account
    """
    def _op():
        actor = require_account(actor_id)
        account = require_account(account_id)
        if account.role == ROLE_ADMIN:
            raise AccessDeniedError("Admin accounts cannot be removed")
        if actor.role != ROLE_ADMIN and account.created_by_id != actor.id:
            raise AccessDeniedError("Only the creating account or an admin can remove this account")

        now = utcnow()
        reclaimed = _reclaim_pool(account, now)

        # Consumed keys stay consumed; ownership falls back to the minter
        conditional_update(
            Key,
            where=(Key.current_owner_id == account.id, Key.is_assigned.is_(True)),
            values={"current_owner_id": Key.generated_by_id},
        )
        orphaned = conditional_update(
            Account, where=(Account.created_by_id == account.id,), values={"created_by_id": None}
        )
        detached = conditional_update(
            Child, where=(Child.parent_id == account.id,), values={"parent_id": None}
        )
        denied = conditional_update(
            KeyRequest,
            where=(
                db.or_(KeyRequest.from_parent_id == account.id, KeyRequest.to_retailer_id == account.id),
                KeyRequest.status == KEY_REQUEST_PENDING,
            ),
            values={
                "status": KEY_REQUEST_DENIED,
                "response_message": "Account removed",
                "resolved_at": now,
                "updated_at": now,
            },
        )
        for column in (KeyRequest.from_parent_id, KeyRequest.to_retailer_id, KeyRequest.resolved_by_id):
            conditional_update(KeyRequest, where=(column == account.id,), values={column.key: None})

        db.session.execute(delete(SessionToken).where(SessionToken.account_id == account.id))
        db.session.execute(delete(Notification).where(Notification.account_id == account.id))
        db.session.execute(delete(Account).where(Account.id == account.id))
        db.session.expunge(account)

        return {
            "removed_account_id": account_id,
            "reclaimed_keys": sum(reclaimed.values()),
            "reclaimed_by_admin": reclaimed,
            "orphaned_accounts": orphaned,
            "detached_children": detached,
            "denied_requests": denied,
        }

    result = run_atomic(_op)
    current_app.logger.info(
        "Account %s removed by %s; %s keys reclaimed", account_id, actor_id, result["reclaimed_keys"]
    )
    return result


def _check_manager(actor: Account, account: Account) -> None:
    if account.role == ROLE_ADMIN:
        raise AccessDeniedError("Admin accounts cannot be changed this way")
    if actor.role != ROLE_ADMIN and account.created_by_id != actor.id:
        raise AccessDeniedError("Only the creating account or an admin can manage this account")


def set_status(actor_id: int, account_id: int, status) -> Account:
    """
    Activate, deactivate or block an account.

    Raises:
        InvalidArgumentError: unknown status
        NotFoundError: unknown actor or account
        AccessDeniedError: admins cannot be changed; only the creator or an
            admin may change an account
    """
    if status not in ACCOUNT_STATUSES:
        raise InvalidArgumentError(f"status must be one of {', '.join(ACCOUNT_STATUSES)}")

    def _op():
        actor = require_account(actor_id)
        account = require_account(account_id)
        _check_manager(actor, account)

        account.status = status
        account.is_active = status == "active"
        revoked = 0
        if status != "active":
            revoked = conditional_update(
                SessionToken,
                where=(SessionToken.account_id == account.id, SessionToken.is_revoked.is_(False)),
                values={"is_revoked": True, "revoked_at": utcnow(), "revoked_reason": f"Account {status}"},
            )
        db.session.flush()
        return account, revoked

    account, revoked = run_atomic(_op)
    current_app.logger.info(
        "Account %s set to %s by %s; %s sessions revoked", account_id, status, actor_id, revoked
    )
    return account
