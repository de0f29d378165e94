"""Key distribution schema: accounts, keys, children, requests, transfer log

Revision ID: 20261019_key_distribution
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_key_distribution"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("received_keys", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("transferred_keys", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("assigned_keys", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("used_keys", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_generated", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("received_keys >= transferred_keys", name="ck_accounts_ledger_non_negative_balance"),
        sa.ForeignKeyConstraint(["created_by_id"], ["accounts.id"], name="fk_accounts_created_by_id_accounts"),
        sa.PrimaryKeyConstraint("id", name="pk_accounts"),
        sa.UniqueConstraint("email", name="uq_accounts_email"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("accounts", schema=None) as batch_op:
        batch_op.create_index("ix_accounts_role", ["role"], unique=False)
        batch_op.create_index("ix_accounts_created_by_id", ["created_by_id"], unique=False)
        batch_op.create_index("ix_accounts_role_created_by", ["role", "created_by_id"], unique=False)

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(255), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], name="fk_session_tokens_account_id_accounts"),
        sa.PrimaryKeyConstraint("id", name="pk_session_tokens"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("session_tokens", schema=None) as batch_op:
        batch_op.create_index("ix_session_tokens_account_id", ["account_id"], unique=False)
        batch_op.create_index("ix_session_tokens_token_hash", ["token_hash"], unique=True)
        batch_op.create_index("ix_session_tokens_expires_at", ["expires_at"], unique=False)
        batch_op.create_index("ix_session_tokens_is_revoked", ["is_revoked"], unique=False)
        batch_op.create_index("ix_session_tokens_account_active", ["account_id", "is_revoked"], unique=False)

    op.create_table(
        "children",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("age", sa.Integer(), nullable=False),
        sa.Column("device_imei", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["parent_id"], ["accounts.id"], name="fk_children_parent_id_accounts"),
        sa.PrimaryKeyConstraint("id", name="pk_children"),
        sa.UniqueConstraint("device_imei", name="uq_children_device_imei"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("children", schema=None) as batch_op:
        batch_op.create_index("ix_children_parent_id", ["parent_id"], unique=False)

    op.create_table(
        "keys",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("current_owner_id", sa.Integer(), nullable=False),
        sa.Column("generated_by_id", sa.Integer(), nullable=False),
        sa.Column("is_assigned", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("assigned_to_child_id", sa.Integer(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reclaimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["current_owner_id"], ["accounts.id"], name="fk_keys_current_owner_id_accounts"),
        sa.ForeignKeyConstraint(["generated_by_id"], ["accounts.id"], name="fk_keys_generated_by_id_accounts"),
        sa.ForeignKeyConstraint(["assigned_to_child_id"], ["children.id"], name="fk_keys_assigned_to_child_id_children"),
        sa.PrimaryKeyConstraint("id", name="pk_keys"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("keys", schema=None) as batch_op:
        batch_op.create_index("ix_keys_token", ["token"], unique=True)
        batch_op.create_index("ix_keys_generated_by_id", ["generated_by_id"], unique=False)
        batch_op.create_index("ix_keys_valid_until", ["valid_until"], unique=False)
        batch_op.create_index("ix_keys_owner_assigned_created", ["current_owner_id", "is_assigned", "created_at"], unique=False)
        batch_op.create_index("ix_keys_child_assigned_at", ["assigned_to_child_id", "assigned_at"], unique=False)

    op.create_table(
        "key_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("from_parent_id", sa.Integer(), nullable=True),
        sa.Column("to_retailer_id", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("response_message", sa.Text(), nullable=True),
        sa.Column("assigned_key_id", sa.Integer(), nullable=True),
        sa.Column("resolved_by_id", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["from_parent_id"], ["accounts.id"], name="fk_key_requests_from_parent_id_accounts"),
        sa.ForeignKeyConstraint(["to_retailer_id"], ["accounts.id"], name="fk_key_requests_to_retailer_id_accounts"),
        sa.ForeignKeyConstraint(["resolved_by_id"], ["accounts.id"], name="fk_key_requests_resolved_by_id_accounts"),
        sa.ForeignKeyConstraint(["assigned_key_id"], ["keys.id"], name="fk_key_requests_assigned_key_id_keys"),
        sa.PrimaryKeyConstraint("id", name="pk_key_requests"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("key_requests", schema=None) as batch_op:
        batch_op.create_index("ix_key_requests_from_parent_id", ["from_parent_id"], unique=False)
        batch_op.create_index("ix_key_requests_status", ["status"], unique=False)
        batch_op.create_index("ix_key_requests_retailer_status", ["to_retailer_id", "status"], unique=False)

    # Append-only: account ids are plain integers so rows outlive removed accounts
    op.create_table(
        "key_transfer_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("from_account_id", sa.Integer(), nullable=True),
        sa.Column("to_account_id", sa.Integer(), nullable=True),
        sa.Column("child_id", sa.Integer(), nullable=True),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="completed"),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("reference", sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_key_transfer_logs"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("key_transfer_logs", schema=None) as batch_op:
        batch_op.create_index("ix_key_transfer_logs_from_account_id", ["from_account_id"], unique=False)
        batch_op.create_index("ix_key_transfer_logs_to_account_id", ["to_account_id"], unique=False)
        batch_op.create_index("ix_key_transfer_logs_from_to_date", ["from_account_id", "to_account_id", "date"], unique=False)
        batch_op.create_index("ix_key_transfer_logs_type_status_date", ["type", "status", "date"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("reference", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], name="fk_notifications_account_id_accounts"),
        sa.PrimaryKeyConstraint("id", name="pk_notifications"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("notifications", schema=None) as batch_op:
        batch_op.create_index("ix_notifications_account_read", ["account_id", "read_at"], unique=False)


def downgrade():
    op.drop_table("notifications")
    op.drop_table("key_transfer_logs")
    op.drop_table("key_requests")
    op.drop_table("keys")
    op.drop_table("children")
    op.drop_table("session_tokens")
    op.drop_table("accounts")
