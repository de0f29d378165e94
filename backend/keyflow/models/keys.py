from __future__ import annotations

from ..extensions import db
from keyflow.time_utils import to_utc_z, days_remaining


KEY_REQUEST_PENDING = "pending"
KEY_REQUEST_APPROVED = "approved"
KEY_REQUEST_DENIED = "denied"
KEY_REQUEST_STATUSES = (KEY_REQUEST_PENDING, KEY_REQUEST_APPROVED, KEY_REQUEST_DENIED)


class Key(db.Model):
    """
    A single activation token.

    OWNERSHIP vs CONSUMPTION:
    - current_owner_id is the account whose pool holds the key. It is
      always set and changes on every transfer down the hierarchy.
    - is_assigned means exactly one thing: the key was terminally consumed
      by a child activation. Keys that merely left an admin's pool are NOT
      assigned; that fact is carried by current_owner_id alone.
    - assigned_to_child_id / assigned_at are written once, together with
      is_assigned, and never change afterwards. valid_until is reset to the
      activation-time horizon at that moment.

    Keys are never deleted. When an owner account is removed its pool is
    returned to the generating admin and reclaimed_at is stamped.
    """
    __tablename__ = "keys"
    __table_args__ = (
        # Pool lookups: "available keys of account X, oldest first"
        db.Index("ix_keys_owner_assigned_created", "current_owner_id", "is_assigned", "created_at"),
        db.Index("ix_keys_child_assigned_at", "assigned_to_child_id", "assigned_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(64), nullable=False, unique=True, index=True)

    current_owner_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False)
    generated_by_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)

    is_assigned = db.Column(db.Boolean, nullable=False, default=False)
    assigned_to_child_id = db.Column(db.Integer, db.ForeignKey("children.id"), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    reclaimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    current_owner = db.relationship("Account", foreign_keys=[current_owner_id])
    generated_by = db.relationship("Account", foreign_keys=[generated_by_id])
    assigned_to = db.relationship("Child", foreign_keys=[assigned_to_child_id], backref=db.backref("keys", lazy=True))

    def __repr__(self) -> str:
        return f"<Key id={self.id} token={self.token!r} owner={self.current_owner_id} assigned={self.is_assigned}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.token,
            "current_owner_id": self.current_owner_id,
            "generated_by_id": self.generated_by_id,
            "is_assigned": self.is_assigned,
            "assigned_to_child_id": self.assigned_to_child_id,
            "assigned_at": to_utc_z(self.assigned_at) if self.assigned_at else None,
            "valid_until": to_utc_z(self.valid_until),
            "days_remaining": days_remaining(self.valid_until),
            "reclaimed_at": to_utc_z(self.reclaimed_at) if self.reclaimed_at else None,
            "created_at": to_utc_z(self.created_at),
        }


class Child(db.Model):
    """
    A monitored child device activated by a parent.

    parent_id is cleared (not cascaded) when the parent account is removed;
    the consumed key keeps pointing at the child.
    """
    __tablename__ = "children"
    __table_args__ = (
        db.UniqueConstraint("device_imei", name="uq_children_device_imei"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    age = db.Column(db.Integer, nullable=False)
    device_imei = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    parent = db.relationship("Account", backref=db.backref("children", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "name": self.name,
            "age": self.age,
            "device_imei": self.device_imei,
            "created_at": to_utc_z(self.created_at),
        }


class KeyRequest(db.Model):
    """
    A parent's solicitation for one key from a retailer.

    LIFECYCLE:
    1. pending: created by the parent, optionally routed to a retailer
    2. approved: a retailer handed over a key (assigned_key_id is set)
    3. denied: a retailer refused (response_message explains why)

    approved and denied are terminal. The pending -> * transition is only
    ever made by a conditional UPDATE on status, so at most one resolution
    can win.
    """
    __tablename__ = "key_requests"
    __table_args__ = (
        db.Index("ix_key_requests_retailer_status", "to_retailer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Cleared when the referenced account is removed
    from_parent_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)
    to_retailer_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)

    message = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default=KEY_REQUEST_PENDING, index=True)
    response_message = db.Column(db.Text, nullable=True)

    assigned_key_id = db.Column(db.Integer, db.ForeignKey("keys.id"), nullable=True)
    resolved_by_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    from_parent = db.relationship("Account", foreign_keys=[from_parent_id])
    to_retailer = db.relationship("Account", foreign_keys=[to_retailer_id])
    resolved_by = db.relationship("Account", foreign_keys=[resolved_by_id])
    assigned_key = db.relationship("Key", foreign_keys=[assigned_key_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_parent_id": self.from_parent_id,
            "to_retailer_id": self.to_retailer_id,
            "message": self.message,
            "status": self.status,
            "response_message": self.response_message,
            "assigned_key": self.assigned_key.token if self.assigned_key else None,
            "resolved_by_id": self.resolved_by_id,
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
