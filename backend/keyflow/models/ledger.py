from __future__ import annotations

from ..extensions import db
from keyflow.time_utils import to_utc_z


LOG_TYPE_GENERATE = "generate"
LOG_TYPE_BULK = "bulk"
LOG_TYPE_DISTRIBUTE = "distribute"
LOG_TYPE_ACTIVATE = "activate"
LOG_TYPE_RECLAIM = "reclaim"
LOG_TYPES = (LOG_TYPE_GENERATE, LOG_TYPE_BULK, LOG_TYPE_DISTRIBUTE, LOG_TYPE_ACTIVATE, LOG_TYPE_RECLAIM)

LOG_STATUS_COMPLETED = "completed"


class KeyTransferLog(db.Model):
    """
    Append-only record of one ledger movement.

    IMMUTABLE: Never update or delete. Written inside the same transaction
    as the key and counter mutations it records.

    Account ids are plain integers on purpose: rows must survive the
    removal of either party.

    - generate:   from NULL -> admin (minting)
    - bulk:       account -> direct subordinate
    - distribute: retailer -> parent (approval / create-parent)
    - activate:   parent -> NULL, child_id set (terminal consumption)
    - reclaim:    removed account -> generating admin

    For any account, received_keys == sum(count where to_account_id == id)
    and transferred_keys == sum(count where from_account_id == id).
    """
    __tablename__ = "key_transfer_logs"
    __table_args__ = (
        db.Index("ix_key_transfer_logs_from_to_date", "from_account_id", "to_account_id", "date"),
        db.Index("ix_key_transfer_logs_type_status_date", "type", "status", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    from_account_id = db.Column(db.Integer, nullable=True, index=True)
    to_account_id = db.Column(db.Integer, nullable=True, index=True)
    child_id = db.Column(db.Integer, nullable=True)

    count = db.Column(db.Integer, nullable=False)
    date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    status = db.Column(db.String(16), nullable=False, default=LOG_STATUS_COMPLETED)
    type = db.Column(db.String(16), nullable=False)
    notes = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_account_id": self.from_account_id,
            "to_account_id": self.to_account_id,
            "child_id": self.child_id,
            "count": self.count,
            "date": to_utc_z(self.date),
            "status": self.status,
            "type": self.type,
            "notes": self.notes,
            "reference": self.reference,
        }
