from __future__ import annotations

from ..extensions import db
from keyflow.time_utils import to_utc_z


class Notification(db.Model):
    """
    Inbox message addressed to a single account.

    Written after the operation that triggers it has committed; losing one
    never affects key or ledger state.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_account_read", "account_id", "read_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False)

    kind = db.Column(db.String(32), nullable=False)  # key_request.created, key_request.approved, ...
    message = db.Column(db.Text, nullable=False)
    reference = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    account = db.relationship("Account", backref=db.backref("notifications", lazy=True, cascade="all, delete-orphan"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "kind": self.kind,
            "message": self.message,
            "reference": self.reference,
            "created_at": to_utc_z(self.created_at),
            "read_at": to_utc_z(self.read_at) if self.read_at else None,
        }
