"""create membership tables

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "3f1c2a9d7b10"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def _key_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False),
        sa.Column("activation_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("redeemed_by_account_id", sa.BigInteger(), nullable=True),
    ]


def _scope_enum() -> sa.Enum:
    return sa.Enum("DAILY", "CYCLE", name="boostscope", native_enum=False, length=20)


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("nickname", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("base_daily_limit", sa.Integer(), nullable=True),
        sa.Column("base_cycle_limit", sa.Integer(), nullable=True),
        sa.Column("current_session_id", sa.String(512), nullable=True),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "access_keys",
        *_key_columns(),
        sa.Column("grant_duration_hours", sa.Float(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["redeemed_by_account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )

    op.create_table(
        "boost_keys",
        *_key_columns(),
        sa.Column("scope", _scope_enum(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("is_temporary", sa.Boolean(), nullable=False),
        sa.Column("temporary_duration_days", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["redeemed_by_account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )

    op.create_table(
        "temporary_boosts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("boost_key_id", sa.BigInteger(), nullable=True),
        sa.Column("scope", _scope_enum(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["boost_key_id"], ["boost_keys.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_temporary_boosts_account_id", "temporary_boosts", ["account_id"])

    op.create_table(
        "quota_ledger",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("feature", sa.String(100), nullable=False),
        sa.Column(
            "outcome",
            sa.Enum("SUCCESS", "FAILURE", name="usageoutcome", native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column("request_data", sa.JSON(), nullable=True),
        sa.Column("response_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quota_ledger_window",
        "quota_ledger",
        ["account_id", "feature", "outcome", "created_at"],
    )

    op.create_table(
        "key_redemptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column(
            "key_type",
            sa.Enum("ACCESS", "BOOST", name="keytype", native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column("key_id", sa.BigInteger(), nullable=False),
        sa.Column("key_code", sa.String(64), nullable=False),
        sa.Column(
            "operation",
            sa.Enum(
                "SIGNUP", "RENEW", "BOOST", name="redemptiontype", native_enum=False, length=20
            ),
            nullable=False,
        ),
        sa.Column("previous_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("new_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_key_redemptions_account_id", "key_redemptions", ["account_id"])

    op.create_table(
        "system_config",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("config_key", sa.String(100), nullable=False),
        sa.Column("config_value", sa.Text(), nullable=False),
        sa.Column(
            "data_type",
            sa.Enum(
                "STRING", "NUMBER", "BOOLEAN", "JSON",
                name="configdatatype", native_enum=False, length=20,
            ),
            nullable=False,
        ),
        sa.Column("description", sa.String(500), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("config_key"),
    )


def downgrade() -> None:
    op.drop_table("system_config")
    op.drop_index("ix_key_redemptions_account_id", table_name="key_redemptions")
    op.drop_table("key_redemptions")
    op.drop_index("ix_quota_ledger_window", table_name="quota_ledger")
    op.drop_table("quota_ledger")
    op.drop_index("ix_temporary_boosts_account_id", table_name="temporary_boosts")
    op.drop_table("temporary_boosts")
    op.drop_table("boost_keys")
    op.drop_table("access_keys")
    op.drop_table("accounts")
