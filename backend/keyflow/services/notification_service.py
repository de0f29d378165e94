# Overview: Service-layer operations for the account inbox.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import NotFoundError
from ..models import Notification
from keyflow.time_utils import utcnow


KIND_REQUEST_CREATED = "key_request.created"
KIND_REQUEST_APPROVED = "key_request.approved"
KIND_REQUEST_DENIED = "key_request.denied"
KIND_KEYS_RECEIVED = "keys.received"


def notify(account_id: int | None, kind: str, message: str, *, reference: str | None = None) -> Notification | None:
    """
    Best-effort inbox write, used after the triggering transaction committed.

    A failure is logged and rolled back, never raised: the key movement the
    message describes has already happened.
    """
    if account_id is None:
        return None
    try:
        item = Notification(account_id=account_id, kind=kind, message=message, reference=reference)
        db.session.add(item)
        db.session.commit()
        return item
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning(
            "Dropped %s notification for account %s", kind, account_id, exc_info=True
        )
        return None


def list_notifications(account_id: int, *, unread_only: bool = False, limit: int = 100) -> list[Notification]:
    query = db.session.query(Notification).filter(Notification.account_id == account_id)
    if unread_only:
        query = query.filter(Notification.read_at.is_(None))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def mark_read(account_id: int, notification_id: int) -> Notification:
    item = db.session.query(Notification).filter_by(id=notification_id, account_id=account_id).first()
    if not item:
        raise NotFoundError("Notification not found")
    if item.read_at is None:
        item.read_at = utcnow()
        db.session.commit()
    return item
