from __future__ import annotations

from ..extensions import db
from keyflow.time_utils import to_utc_z


ROLE_ADMIN = "admin"
ROLE_ND = "nd"
ROLE_SS = "ss"
ROLE_DB = "db"
ROLE_RETAILER = "retailer"
ROLE_PARENT = "parent"
ROLES = (ROLE_ADMIN, ROLE_ND, ROLE_SS, ROLE_DB, ROLE_RETAILER, ROLE_PARENT)

ACCOUNT_STATUSES = ("active", "inactive", "blocked")


class Account(db.Model):
    """
    Every participant in the distribution hierarchy, whatever its role.

    HIERARCHY: created_by_id points at the account one level up
    (admin > nd > ss > db > retailer > parent). It is NULL for admins and
    for accounts orphaned when their creator was removed.

    LEDGER: received_keys and transferred_keys summarize the key store.
    For every account at every commit:

        received_keys - transferred_keys == live pool size

    where the pool is the set of keys with current_owner_id == id and
    is_assigned == False. Only the transfer engine, the request workflow,
    activation, generation and account removal write these columns, and
    always with SQL-side increments inside the same transaction as the
    key mutation they summarize.

    assigned_keys / used_keys are legacy balance-display counters that
    mirror received_keys / transferred_keys.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_accounts_email"),
        db.Index("ix_accounts_role_created_by", "role", "created_by_id"),
        db.CheckConstraint("received_keys >= transferred_keys", name="ledger_non_negative_balance"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.String(16), nullable=False, index=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    address = db.Column(db.String(255), nullable=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="active")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    received_keys = db.Column(db.Integer, nullable=False, default=0)
    transferred_keys = db.Column(db.Integer, nullable=False, default=0)
    assigned_keys = db.Column(db.Integer, nullable=False, default=0)
    used_keys = db.Column(db.Integer, nullable=False, default=0)
    total_generated = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.relationship("Account", remote_side=[id], backref=db.backref("subordinates", lazy=True))

    @property
    def balance(self) -> int:
        return (self.received_keys or 0) - (self.transferred_keys or 0)

    def __repr__(self) -> str:
        return f"<Account id={self.id} role={self.role!r} email={self.email!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "created_by_id": self.created_by_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "status": self.status,
            "is_active": self.is_active,
            "received_keys": self.received_keys,
            "transferred_keys": self.transferred_keys,
            "assigned_keys": self.assigned_keys,
            "used_keys": self.used_keys,
            "total_generated": self.total_generated,
            "balance": self.balance,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }


class SessionToken(db.Model):
    """
    Opaque bearer session for an account.

    SECURITY NOTES:
    - Tokens stored hashed in database (SHA-256)
    - 24-hour absolute timeout, 2-hour idle timeout
    - Revocable on logout or account removal
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.Index("ix_session_tokens_account_active", "account_id", "is_revoked"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)

    # Token hash (never store plaintext tokens!)
    token_hash = db.Column(db.String(255), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)  # IPv6 max length

    account = db.relationship("Account", backref=db.backref("session_tokens", lazy=True, cascade="all, delete-orphan"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
            "revoked_at": to_utc_z(self.revoked_at) if self.revoked_at else None,
        }
