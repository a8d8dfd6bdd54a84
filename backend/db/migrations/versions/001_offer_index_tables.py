"""offer_index_tables — source offer tables and the derived offer index

Source tables (written by the merchant/offer services):
  - reviews, merchants, outlets, paybills_or_tills
  - cashback_configurations (+ tiers, outlet links)
  - exclusive_offers (+ outlet links)
  - loyalty_programs, loyalty_tiers, merchant_loyalty_rewards
  - customer_types

Derived tables (written only by the recompute engine):
  - offer_index, offer_index_customer_types, offer_index_outlets
  - loyalty_tier_index, user_merchant_profiles
  - offer_index_rebuild_log

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(length=64), primary_key=True)


def _fk(name: str, target: str, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(name, sa.String(length=64), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def _review_fk() -> sa.Column:
    return _fk("review_id", "reviews.id", nullable=True, ondelete="SET NULL")


def upgrade() -> None:
    # ═══════════════════════════════════════════════════════════════════
    # Source tables
    # ═══════════════════════════════════════════════════════════════════

    op.create_table(
        "reviews",
        _id(),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("status IN ('Approved', 'Pending', 'Rejected')", name="ck_review_status"),
    )

    op.create_table(
        "merchants",
        _id(),
        sa.Column("business_name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("status IN ('Active', 'Inactive', 'Suspended')", name="ck_merchant_status"),
    )
    op.create_index("ix_merchants_category", "merchants", ["category"])

    op.create_table(
        "outlets",
        _id(),
        _fk("merchant_id", "merchants.id"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _review_fk(),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_outlets_merchant", "outlets", ["merchant_id"])

    op.create_table(
        "paybills_or_tills",
        _id(),
        _fk("outlet_id", "outlets.id"),
        sa.Column("number", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        _review_fk(),
    )
    op.create_index("ix_paybills_outlet", "paybills_or_tills", ["outlet_id"])

    # --- cashback ---
    op.create_table(
        "cashback_configurations",
        _id(),
        _fk("merchant_id", "merchants.id"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("eligible_customer_types", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("net_cashback_budget", sa.Numeric(14, 2), nullable=False),
        sa.Column("used_cashback_budget", sa.Numeric(14, 2), nullable=False),
        _review_fk(),
    )
    op.create_table(
        "cashback_configuration_outlets",
        sa.Column(
            "cashback_configuration_id",
            sa.String(length=64),
            sa.ForeignKey("cashback_configurations.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("outlet_id", sa.String(length=64), sa.ForeignKey("outlets.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_table(
        "cashback_configuration_tiers",
        _id(),
        _fk("cashback_configuration_id", "cashback_configurations.id"),
        sa.Column("percentage", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        _review_fk(),
    )

    # --- exclusive offers ---
    op.create_table(
        "exclusive_offers",
        _id(),
        _fk("merchant_id", "merchants.id", nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("eligible_customer_types", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("net_offer_budget", sa.Numeric(14, 2), nullable=False),
        sa.Column("used_offer_budget", sa.Numeric(14, 2), nullable=False),
        _review_fk(),
    )
    op.create_table(
        "exclusive_offer_outlets",
        sa.Column(
            "exclusive_offer_id",
            sa.String(length=64),
            sa.ForeignKey("exclusive_offers.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("outlet_id", sa.String(length=64), sa.ForeignKey("outlets.id", ondelete="CASCADE"), primary_key=True),
    )

    # --- loyalty ---
    op.create_table(
        "loyalty_programs",
        _id(),
        _fk("merchant_id", "merchants.id"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("points_issued_limit", sa.Numeric(14, 2), nullable=True),
        sa.Column("points_used_in_period", sa.Numeric(14, 2), nullable=False),
        _review_fk(),
        sa.UniqueConstraint("merchant_id"),
    )
    op.create_table(
        "loyalty_tiers",
        _id(),
        _fk("loyalty_program_id", "loyalty_programs.id"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("min_customer_type", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        _review_fk(),
    )
    op.create_table(
        "merchant_loyalty_rewards",
        _id(),
        _fk("loyalty_program_id", "loyalty_programs.id"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _review_fk(),
    )

    op.create_table(
        "customer_types",
        _id(),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        _fk("merchant_id", "merchants.id"),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "merchant_id", name="uq_customer_type_user_merchant"),
    )
    op.create_index("ix_customer_types_user", "customer_types", ["user_id"])

    # ═══════════════════════════════════════════════════════════════════
    # Offer index (derived)
    # ═══════════════════════════════════════════════════════════════════

    op.create_table(
        "offer_index",
        _id(),
        sa.Column("kind", sa.String(length=16), nullable=False),
        _fk("merchant_id", "merchants.id"),
        _fk("cashback_configuration_id", "cashback_configurations.id", nullable=True),
        _fk("exclusive_offer_id", "exclusive_offers.id", nullable=True),
        _fk("loyalty_program_id", "loyalty_programs.id", nullable=True),
        sa.Column("is_active_snapshot", sa.Boolean(), nullable=False),
        sa.Column("is_approved_snapshot", sa.Boolean(), nullable=False),
        sa.Column("deleted_at_snapshot", sa.DateTime(), nullable=True),
        sa.Column("budget_exhausted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("max_cashback_percent_bps", sa.Integer(), nullable=True),
        sa.Column("computed_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("cashback_configuration_id"),
        sa.UniqueConstraint("exclusive_offer_id"),
        sa.UniqueConstraint("loyalty_program_id"),
        sa.CheckConstraint("kind IN ('CASHBACK', 'EXCLUSIVE', 'LOYALTY')", name="ck_offer_index_kind"),
        sa.CheckConstraint(
            "(kind = 'CASHBACK' AND cashback_configuration_id IS NOT NULL"
            " AND exclusive_offer_id IS NULL AND loyalty_program_id IS NULL)"
            " OR (kind = 'EXCLUSIVE' AND exclusive_offer_id IS NOT NULL"
            " AND cashback_configuration_id IS NULL AND loyalty_program_id IS NULL)"
            " OR (kind = 'LOYALTY' AND loyalty_program_id IS NOT NULL"
            " AND cashback_configuration_id IS NULL AND exclusive_offer_id IS NULL)",
            name="ck_offer_index_single_source",
        ),
    )
    op.create_index(
        "ix_offer_index_kind_active_approved_budget",
        "offer_index",
        ["kind", "is_active_snapshot", "is_approved_snapshot", "budget_exhausted"],
    )
    op.create_index("ix_offer_index_merchant_kind", "offer_index", ["merchant_id", "kind"])

    op.create_table(
        "offer_index_customer_types",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("offer_index_id", "offer_index.id"),
        sa.Column("customer_type", sa.String(length=32), nullable=False),
        sa.UniqueConstraint("offer_index_id", "customer_type", name="uq_offer_index_customer_type"),
    )
    op.create_index(
        "ix_offer_index_customer_types_type", "offer_index_customer_types", ["customer_type", "offer_index_id"]
    )

    op.create_table(
        "offer_index_outlets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("offer_index_id", "offer_index.id"),
        _fk("outlet_id", "outlets.id"),
        sa.UniqueConstraint("offer_index_id", "outlet_id", name="uq_offer_index_outlet"),
    )
    op.create_index("ix_offer_index_outlets_outlet", "offer_index_outlets", ["outlet_id", "offer_index_id"])

    op.create_table(
        "loyalty_tier_index",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("offer_index_id", "offer_index.id"),
        sa.Column("tier_rank", sa.Integer(), nullable=False),
        sa.CheckConstraint("tier_rank >= 0", name="ck_loyalty_tier_rank"),
    )
    op.create_index("ix_loyalty_tier_index_offer_rank", "loyalty_tier_index", ["offer_index_id", "tier_rank"])

    op.create_table(
        "user_merchant_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        _fk("merchant_id", "merchants.id"),
        sa.Column("customer_type", sa.String(length=32), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("computed_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "merchant_id", name="uq_user_merchant_profile"),
    )
    op.create_index(
        "ix_user_merchant_profiles_merchant_rank", "user_merchant_profiles", ["merchant_id", "rank"]
    )

    op.create_table(
        "offer_index_rebuild_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_type", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("status IN ('RETRYING', 'FAILED')", name="ck_rebuild_log_status"),
    )
    op.create_index("ix_rebuild_log_status_created", "offer_index_rebuild_log", ["status", "created_at"])
    op.create_index(
        "ix_rebuild_log_entity_status", "offer_index_rebuild_log", ["entity_type", "entity_id", "status"]
    )


def downgrade() -> None:
    for table in (
        "offer_index_rebuild_log",
        "user_merchant_profiles",
        "loyalty_tier_index",
        "offer_index_outlets",
        "offer_index_customer_types",
        "offer_index",
        "customer_types",
        "merchant_loyalty_rewards",
        "loyalty_tiers",
        "loyalty_programs",
        "exclusive_offer_outlets",
        "exclusive_offers",
        "cashback_configuration_tiers",
        "cashback_configuration_outlets",
        "cashback_configurations",
        "paybills_or_tills",
        "outlets",
        "merchants",
        "reviews",
    ):
        op.drop_table(table)
