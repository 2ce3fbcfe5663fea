from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects.postgresql import JSONB


revision = "0001_coupon_engine_schema"
down_revision = None
branch_labels = None
depends_on = None


def _json_type():
    return JSONB().with_variant(sa.JSON(), "sqlite")


def _has_index(inspector, table_name: str, index_name: str) -> bool:
    return any(idx["name"] == index_name for idx in inspector.get_indexes(table_name))


def upgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)

    if "coupon_campaigns" not in inspector.get_table_names():
        op.create_table(
            "coupon_campaigns",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=100), nullable=False, unique=True),
            sa.Column("slug", sa.String(length=120), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("code_prefix", sa.String(length=20), nullable=True),
            sa.Column("discount_type", sa.String(length=20), nullable=False),
            sa.Column("discount_value", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("max_discount_cap", sa.Numeric(12, 2), nullable=True),
            sa.Column("min_purchase_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("eligibility_tags", _json_type(), nullable=False),
            sa.Column("target_user_groups", _json_type(), nullable=False),
            sa.Column("applicable_category_ids", _json_type(), nullable=False),
            sa.Column("applicable_item_ids", _json_type(), nullable=False),
            sa.Column("max_usage_per_user", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("max_global_usage", sa.Integer(), nullable=True),
            sa.Column("is_unique_per_user", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("global_usage_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
            sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.CheckConstraint("global_usage_count >= 0", name="ck_coupon_campaigns_usage_non_negative"),
            sa.CheckConstraint(
                "max_global_usage IS NULL OR global_usage_count <= max_global_usage",
                name="ck_coupon_campaigns_usage_within_cap",
            ),
            sa.CheckConstraint("max_usage_per_user >= 1", name="ck_coupon_campaigns_per_user_positive"),
            sa.CheckConstraint("valid_from <= valid_until", name="ck_coupon_campaigns_window"),
        )

    inspector = inspect(bind)
    if not _has_index(inspector, "coupon_campaigns", "ix_coupon_campaigns_slug"):
        op.create_index("ix_coupon_campaigns_slug", "coupon_campaigns", ["slug"], unique=False)
    if not _has_index(inspector, "coupon_campaigns", "ix_coupon_campaigns_valid_until"):
        op.create_index("ix_coupon_campaigns_valid_until", "coupon_campaigns", ["valid_until"], unique=False)
    if not _has_index(inspector, "coupon_campaigns", "ix_coupon_campaigns_is_active"):
        op.create_index("ix_coupon_campaigns_is_active", "coupon_campaigns", ["is_active"], unique=False)

    inspector = inspect(bind)
    if "coupon_ledger_entries" not in inspector.get_table_names():
        op.create_table(
            "coupon_ledger_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("campaign_id", sa.Integer(), sa.ForeignKey("coupon_campaigns.id"), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("coupon_code", sa.String(length=50), nullable=False, unique=True),
            sa.Column("unique_owner_key", sa.String(length=100), nullable=True, unique=True),
            sa.Column("current_usage_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("last_usage_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("current_usage_count >= 0", name="ck_coupon_ledger_usage_non_negative"),
        )

    inspector = inspect(bind)
    if not _has_index(inspector, "coupon_ledger_entries", "ix_coupon_ledger_entries_campaign_id"):
        op.create_index("ix_coupon_ledger_entries_campaign_id", "coupon_ledger_entries", ["campaign_id"], unique=False)
    if not _has_index(inspector, "coupon_ledger_entries", "ix_coupon_ledger_entries_user_id"):
        op.create_index("ix_coupon_ledger_entries_user_id", "coupon_ledger_entries", ["user_id"], unique=False)
    if not _has_index(inspector, "coupon_ledger_entries", "ix_coupon_ledger_user_campaign"):
        op.create_index(
            "ix_coupon_ledger_user_campaign",
            "coupon_ledger_entries",
            ["user_id", "campaign_id"],
            unique=False,
        )

    inspector = inspect(bind)
    if "coupon_redemptions" not in inspector.get_table_names():
        op.create_table(
            "coupon_redemptions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "ledger_entry_id",
                sa.Integer(),
                sa.ForeignKey("coupon_ledger_entries.id"),
                nullable=False,
            ),
            sa.Column("campaign_id", sa.Integer(), sa.ForeignKey("coupon_campaigns.id"), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("idempotency_key", sa.String(length=128), nullable=True),
            sa.Column("cart_subtotal", sa.Numeric(12, 2), nullable=False),
            sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("free_shipping", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("usage_count_after", sa.Integer(), nullable=False),
            sa.Column("global_usage_after", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.UniqueConstraint("ledger_entry_id", "idempotency_key", name="uq_coupon_redemptions_entry_key"),
        )

    inspector = inspect(bind)
    if not _has_index(inspector, "coupon_redemptions", "ix_coupon_redemptions_ledger_entry_id"):
        op.create_index(
            "ix_coupon_redemptions_ledger_entry_id",
            "coupon_redemptions",
            ["ledger_entry_id"],
            unique=False,
        )
    if not _has_index(inspector, "coupon_redemptions", "ix_coupon_redemptions_campaign_id"):
        op.create_index("ix_coupon_redemptions_campaign_id", "coupon_redemptions", ["campaign_id"], unique=False)

    inspector = inspect(bind)
    if "admin_audit_log" not in inspector.get_table_names():
        op.create_table(
            "admin_audit_log",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("actor", sa.String(length=64), nullable=False),
            sa.Column("action", sa.String(), nullable=False),
            sa.Column("entity_type", sa.String(), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("meta_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        )

    inspector = inspect(bind)
    if not _has_index(inspector, "admin_audit_log", "ix_admin_audit_log_id"):
        op.create_index("ix_admin_audit_log_id", "admin_audit_log", ["id"], unique=False)
    if not _has_index(inspector, "admin_audit_log", "ix_admin_audit_log_actor"):
        op.create_index("ix_admin_audit_log_actor", "admin_audit_log", ["actor"], unique=False)


def downgrade() -> None:
    op.drop_table("admin_audit_log")
    op.drop_table("coupon_redemptions")
    op.drop_table("coupon_ledger_entries")
    op.drop_table("coupon_campaigns")
