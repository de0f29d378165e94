# Overview: Service-layer operations for parent key requests; create, approve, deny and list.

"""
Key request workflow (parent <- retailer, one key at a time).

STATE MACHINE:
    pending -> approved
    pending -> denied
Both outcomes are terminal.

GATE: every resolution starts with
    UPDATE key_requests SET status=<outcome> WHERE id=? AND status='pending'
If that changes no row the request is missing (NotFound) or was resolved
by someone else first (Conflict). Authorization, the key claim, the
counters and the log entry all happen after the gate in the same
transaction, so any failure puts the request back to pending.

Notifications are written after commit and may be lost without affecting
the ledger.
"""
from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import (
    AccessDeniedError,
    ConflictError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
)
from ..models import Account, KeyRequest
from ..models.accounts import ROLE_PARENT, ROLE_RETAILER
from ..models.keys import KEY_REQUEST_APPROVED, KEY_REQUEST_DENIED, KEY_REQUEST_PENDING
from . import notification_service
from .account_service import require_account
from .concurrency import run_atomic, conditional_update
from .transfer_service import hand_over_key
from keyflow.time_utils import utcnow


MAX_MESSAGE_LENGTH = 2000


def _clean_message(message) -> str | None:
    if message is None:
        return None
    if not isinstance(message, str):
        raise InvalidArgumentError("message must be a string")
    message = message.strip()
    if len(message) > MAX_MESSAGE_LENGTH:
        raise InvalidArgumentError(f"message must be at most {MAX_MESSAGE_LENGTH} characters")
    return message or None


def request_reference(request_id: int) -> str:
    return f"key_request:{request_id}"


def create_request(parent_id: int, message=None, *, retailer_id: int | None = None) -> KeyRequest:
    """
    Record a parent's request for one key.

    The request is routed to `retailer_id` when given, otherwise to the
    retailer that created the parent (if it still exists). Unrouted
    requests can be approved by any retailer.
    """
    message = _clean_message(message)

    def _op():
        parent = require_account(parent_id, ROLE_PARENT)

        retailer = None
        if retailer_id is not None:
            retailer = db.session.get(Account, retailer_id)
            if not retailer or retailer.role != ROLE_RETAILER:
                raise InvalidArgumentError("retailer must name an existing retailer account")
        elif parent.created_by is not None and parent.created_by.role == ROLE_RETAILER:
            retailer = parent.created_by

        req = KeyRequest(
            from_parent_id=parent.id,
            to_retailer_id=retailer.id if retailer else None,
            message=message,
            status=KEY_REQUEST_PENDING,
        )
        db.session.add(req)
        db.session.flush()
        return req

    req = run_atomic(_op)

    notification_service.notify(
        req.to_retailer_id,
        notification_service.KIND_REQUEST_CREATED,
        f"New key request #{req.id} from parent {req.from_parent_id}",
        reference=request_reference(req.id),
    )
    return req


def _resolve_gate(request_id: int, outcome: str, retailer: Account) -> KeyRequest:
    """
    Flip pending -> outcome with one conditional UPDATE and return the
    refreshed request. Raises NotFound / Conflict when nothing changed.
    """
    now = utcnow()
    changed = conditional_update(
        KeyRequest,
        where=(KeyRequest.id == request_id, KeyRequest.status == KEY_REQUEST_PENDING),
        values={
            "status": outcome,
            "resolved_by_id": retailer.id,
            "resolved_at": now,
            "updated_at": now,
        },
    )
    if changed == 0:
        exists = db.session.query(KeyRequest.id).filter_by(id=request_id).first()
        if not exists:
            raise NotFoundError("Key request not found")
        raise ConflictError("Key request has already been resolved")

    req = db.session.get(KeyRequest, request_id, populate_existing=True)
    if req.to_retailer_id is not None and req.to_retailer_id != retailer.id:
        raise AccessDeniedError("This key request is addressed to another retailer")
    return req


def approve_request(retailer_id: int, request_id: int, *, key_token: str | None = None) -> KeyRequest:
    """
    Approve a pending request by handing exactly one key to the parent.

    Args:
        retailer_id: Approving retailer
        request_id: Pending request
        key_token: Hand over this specific key instead of the oldest one

    Raises:
        NotFoundError: unknown request, retailer or key_token
        ConflictError: request already approved or denied
        AccessDeniedError: caller is not the addressed retailer
        InvalidStateError: key_token is consumed / not the retailer's,
            or the requesting parent no longer exists
        InsufficientInventoryError: retailer has no available key
    """
    def _op():
        retailer = require_account(retailer_id, ROLE_RETAILER)
        req = _resolve_gate(request_id, KEY_REQUEST_APPROVED, retailer)

        parent = db.session.get(Account, req.from_parent_id) if req.from_parent_id else None
        if parent is None:
            raise InvalidStateError("The requesting parent no longer exists")

        key = hand_over_key(
            retailer,
            parent,
            key_token=key_token,
            reference=request_reference(req.id),
        )

        req.assigned_key_id = key.id
        if req.to_retailer_id is None:
            req.to_retailer_id = retailer.id
        db.session.flush()
        return req

    req = run_atomic(_op)

    current_app.logger.info(
        "Key request %s approved by retailer %s (key %s)", req.id, retailer_id, req.assigned_key_id
    )
    notification_service.notify(
        req.from_parent_id,
        notification_service.KIND_REQUEST_APPROVED,
        f"Your key request #{req.id} was approved",
        reference=request_reference(req.id),
    )
    return req


def deny_request(retailer_id: int, request_id: int, message=None) -> KeyRequest:
    """
    Deny a pending request. No key or counter changes.
    """
    message = _clean_message(message)

    def _op():
        retailer = require_account(retailer_id, ROLE_RETAILER)
        req = _resolve_gate(request_id, KEY_REQUEST_DENIED, retailer)
        req.response_message = message
        if req.to_retailer_id is None:
            req.to_retailer_id = retailer.id
        db.session.flush()
        return req

    req = run_atomic(_op)

    notification_service.notify(
        req.from_parent_id,
        notification_service.KIND_REQUEST_DENIED,
        f"Your key request #{req.id} was denied" + (f": {req.response_message}" if req.response_message else ""),
        reference=request_reference(req.id),
    )
    return req


def get_request(request_id: int) -> KeyRequest:
    req = db.session.get(KeyRequest, request_id)
    if not req:
        raise NotFoundError("Key request not found")
    return req


def list_requests_for_retailer(retailer_id: int, *, status: str | None = None, include_unrouted: bool = True) -> list[KeyRequest]:
    """Requests addressed to the retailer, plus unrouted pending ones."""
    query = db.session.query(KeyRequest)
    if include_unrouted:
        query = query.filter(
            db.or_(
                KeyRequest.to_retailer_id == retailer_id,
                db.and_(KeyRequest.to_retailer_id.is_(None), KeyRequest.status == KEY_REQUEST_PENDING),
            )
        )
    else:
        query = query.filter(KeyRequest.to_retailer_id == retailer_id)
    if status:
        query = query.filter(KeyRequest.status == status)
    return query.order_by(KeyRequest.created_at.desc(), KeyRequest.id.desc()).all()


def list_requests_for_parent(parent_id: int, *, status: str | None = None) -> list[KeyRequest]:
    query = db.session.query(KeyRequest).filter(KeyRequest.from_parent_id == parent_id)
    if status:
        query = query.filter(KeyRequest.status == status)
    return query.order_by(KeyRequest.created_at.desc(), KeyRequest.id.desc()).all()
