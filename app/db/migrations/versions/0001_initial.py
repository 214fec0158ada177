"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tg_id", sa.BigInteger(), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=True),
        sa.Column("ref_code", sa.String(length=8), nullable=False),
        sa.Column("referred_by_user_id", sa.Integer(), nullable=True),
        sa.Column("subscription_active", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("subscription_link", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["referred_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_users_tg_id", "users", ["tg_id"], unique=True)
    op.create_index("ix_users_ref_code", "users", ["ref_code"], unique=True)
    op.create_index("ix_users_referred_by_user_id", "users", ["referred_by_user_id"])

    op.create_table(
        "servers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("server_name", sa.String(length=64), nullable=False),
        sa.Column("server_ip", sa.String(length=64), nullable=False),
        sa.Column("country", sa.String(length=32), server_default="", nullable=False),
        sa.Column("status", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("xui_api_url", sa.String(length=256), nullable=False),
        sa.Column("xui_username", sa.String(length=64), nullable=False),
        sa.Column("xui_password", sa.Text(), nullable=False),
        sa.Column("inbound_id", sa.Integer(), nullable=False),
        sa.Column("server_port", sa.Integer(), nullable=True),
        sa.Column("vless_port", sa.Integer(), server_default="443", nullable=False),
        sa.Column("vless_type", sa.String(length=16), server_default="tcp", nullable=True),
        sa.Column("vless_security", sa.String(length=16), server_default="reality", nullable=True),
        sa.Column("vless_fp", sa.String(length=32), server_default="chrome", nullable=True),
        sa.Column("vless_sni", sa.String(length=128), nullable=True),
        sa.Column("vless_public_key", sa.String(length=128), nullable=True),
        sa.Column("vless_sid", sa.String(length=32), nullable=True),
        sa.Column("vless_spx", sa.String(length=128), server_default="/", nullable=True),
        sa.Column("vless_flow", sa.String(length=32), nullable=True),
        sa.Column("limit_ip", sa.Integer(), server_default="0", nullable=False),
        sa.Column("active_subscribers", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("plan_kind", sa.String(length=16), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("servers_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    # one active subscription per user, one trial per user ever
    op.create_index(
        "uq_subscriptions_user_active",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )
    op.create_index(
        "uq_subscriptions_user_trial",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("plan_kind = 'trial'"),
        sqlite_where=sa.text("plan_kind = 'trial'"),
    )

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("discount_percent", sa.Integer(), nullable=False),
        sa.Column("valid_for", sa.String(length=128), server_default="all", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("is_one_time", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("usage_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_usage", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("discount_percent >= 0 AND discount_percent <= 100", name="ck_promo_codes_discount_range"),
    )
    op.create_index("ix_promo_codes_code", "promo_codes", ["code"], unique=True)

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), server_default="RUB", nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("promo_code_used", sa.String(length=32), nullable=True),
        sa.Column("discount_applied", sa.Integer(), server_default="0", nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_subscription_id", "payments", ["subscription_id"])
    op.create_index("ix_payments_promo_code_used", "payments", ["promo_code_used"])

    op.create_table(
        "referral_bonuses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("referrer_user_id", sa.Integer(), nullable=False),
        sa.Column("referred_user_id", sa.Integer(), nullable=False),
        sa.Column("bonus_days", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["referrer_user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["referred_user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("referred_user_id", name="uq_referral_bonuses_referred"),
    )
    op.create_index("ix_referral_bonuses_referrer_user_id", "referral_bonuses", ["referrer_user_id"])


def downgrade() -> None:
    op.drop_table("referral_bonuses")
    op.drop_table("payments")
    op.drop_table("promo_codes")
    op.drop_index("uq_subscriptions_user_trial", table_name="subscriptions")
    op.drop_index("uq_subscriptions_user_active", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("servers")
    op.drop_table("users")
