"""
Offer Index Database Models

Source tables are owned by the merchant/offer management services and are
read-only from this service. Index tables are derived state written only by
``eligibility.recompute``.

Tables:
  Source (read-only):
  1. reviews                       - Approval workflow status
  2. merchants                     - Merchant accounts (status, category)
  3. outlets                       - Storefronts belonging to a merchant
  4. paybills_or_tills             - Payment collection points per outlet
  5. cashback_configurations       - Cashback offers (+ outlet links)
  6. cashback_configuration_tiers  - Percentage tiers (basis points)
  7. exclusive_offers              - Exclusive deals (+ outlet links)
  8. loyalty_programs              - One per merchant
  9. loyalty_tiers                 - Tier with minimum customer type
  10. merchant_loyalty_rewards     - Rewards redeemable in a program
  11. customer_types               - User x merchant relationship type

  Offer Index (derived):
  12. offer_index                  - One snapshot row per source offer
  13. offer_index_customer_types   - Normalized eligible customer types
  14. offer_index_outlets          - Outlets an offer applies to
  15. loyalty_tier_index           - Qualifying tier ranks per loyalty offer
  16. user_merchant_profiles       - Ranked customer type per user x merchant
  17. offer_index_rebuild_log      - Failed background job audit trail
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from db.session import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ReviewStatus(enum.StrEnum):
    APPROVED = "Approved"
    PENDING = "Pending"
    REJECTED = "Rejected"


class MerchantStatus(enum.StrEnum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    SUSPENDED = "Suspended"


class OfferKind(enum.StrEnum):
    CASHBACK = "CASHBACK"
    EXCLUSIVE = "EXCLUSIVE"
    LOYALTY = "LOYALTY"


# ─── 1. Reviews ─────────────────────────────────────────────────────────────


class Review(Base):
    __tablename__ = "reviews"

    id = Column(String(64), primary_key=True, default=_new_id)
    status = Column(String(20), nullable=False, default=ReviewStatus.PENDING.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('Approved', 'Pending', 'Rejected')", name="ck_review_status"),
    )


# ─── 2. Merchants ───────────────────────────────────────────────────────────


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(String(64), primary_key=True, default=_new_id)
    business_name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=MerchantStatus.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('Active', 'Inactive', 'Suspended')", name="ck_merchant_status"),
        Index("ix_merchants_category", "category"),
    )

    outlets = relationship("Outlet", back_populates="merchant", passive_deletes=True)
    loyalty_program = relationship("LoyaltyProgram", back_populates="merchant", uselist=False, passive_deletes=True)


# ─── 3. Outlets ─────────────────────────────────────────────────────────────


class Outlet(Base):
    __tablename__ = "outlets"

    id = Column(String(64), primary_key=True, default=_new_id)
    merchant_id = Column(String(64), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    review_id = Column(String(64), ForeignKey("reviews.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_outlets_merchant", "merchant_id"),)

    merchant = relationship("Merchant", back_populates="outlets")
    review = relationship("Review")


# ─── 4. Paybills / Tills ────────────────────────────────────────────────────


class PaybillOrTill(Base):
    __tablename__ = "paybills_or_tills"

    id = Column(String(64), primary_key=True, default=_new_id)
    outlet_id = Column(String(64), ForeignKey("outlets.id", ondelete="CASCADE"), nullable=False)
    number = Column(String(32), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime, nullable=True)
    review_id = Column(String(64), ForeignKey("reviews.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (Index("ix_paybills_outlet", "outlet_id"),)

    review = relationship("Review")


# ─── 5-6. Cashback ──────────────────────────────────────────────────────────


cashback_configuration_outlets = Table(
    "cashback_configuration_outlets",
    Base.metadata,
    Column(
        "cashback_configuration_id",
        String(64),
        ForeignKey("cashback_configurations.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("outlet_id", String(64), ForeignKey("outlets.id", ondelete="CASCADE"), primary_key=True),
)


class CashbackConfiguration(Base):
    __tablename__ = "cashback_configurations"

    id = Column(String(64), primary_key=True, default=_new_id)
    merchant_id = Column(String(64), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    eligible_customer_types = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    net_cashback_budget = Column(Numeric(14, 2), nullable=False, default=0)
    used_cashback_budget = Column(Numeric(14, 2), nullable=False, default=0)
    review_id = Column(String(64), ForeignKey("reviews.id", ondelete="SET NULL"), nullable=True)

    review = relationship("Review")
    outlets = relationship("Outlet", secondary=cashback_configuration_outlets)
    tiers = relationship("CashbackConfigurationTier", back_populates="cashback_configuration", passive_deletes=True)


class CashbackConfigurationTier(Base):
    __tablename__ = "cashback_configuration_tiers"

    id = Column(String(64), primary_key=True, default=_new_id)
    cashback_configuration_id = Column(
        String(64), ForeignKey("cashback_configurations.id", ondelete="CASCADE"), nullable=False
    )
    percentage = Column(Integer, nullable=False)  # basis points
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime, nullable=True)
    review_id = Column(String(64), ForeignKey("reviews.id", ondelete="SET NULL"), nullable=True)

    cashback_configuration = relationship("CashbackConfiguration", back_populates="tiers")
    review = relationship("Review")


# ─── 7. Exclusive Offers ────────────────────────────────────────────────────


exclusive_offer_outlets = Table(
    "exclusive_offer_outlets",
    Base.metadata,
    Column(
        "exclusive_offer_id",
        String(64),
        ForeignKey("exclusive_offers.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("outlet_id", String(64), ForeignKey("outlets.id", ondelete="CASCADE"), primary_key=True),
)


class ExclusiveOffer(Base):
    __tablename__ = "exclusive_offers"

    id = Column(String(64), primary_key=True, default=_new_id)
    merchant_id = Column(String(64), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    eligible_customer_types = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    net_offer_budget = Column(Numeric(14, 2), nullable=False, default=0)
    used_offer_budget = Column(Numeric(14, 2), nullable=False, default=0)
    review_id = Column(String(64), ForeignKey("reviews.id", ondelete="SET NULL"), nullable=True)

    review = relationship("Review")
    outlets = relationship("Outlet", secondary=exclusive_offer_outlets)


# ─── 8-10. Loyalty ──────────────────────────────────────────────────────────


class LoyaltyProgram(Base):
    __tablename__ = "loyalty_programs"

    id = Column(String(64), primary_key=True, default=_new_id)
    merchant_id = Column(String(64), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    points_issued_limit = Column(Numeric(14, 2), nullable=True)  # NULL = unlimited
    points_used_in_period = Column(Numeric(14, 2), nullable=False, default=0)
    review_id = Column(String(64), ForeignKey("reviews.id", ondelete="SET NULL"), nullable=True)

    merchant = relationship("Merchant", back_populates="loyalty_program")
    review = relationship("Review")
    tiers = relationship("LoyaltyTier", back_populates="loyalty_program", passive_deletes=True)
    rewards = relationship("MerchantLoyaltyReward", back_populates="loyalty_program", passive_deletes=True)


class LoyaltyTier(Base):
    __tablename__ = "loyalty_tiers"

    id = Column(String(64), primary_key=True, default=_new_id)
    loyalty_program_id = Column(String(64), ForeignKey("loyalty_programs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    min_customer_type = Column(String(32), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime, nullable=True)
    review_id = Column(String(64), ForeignKey("reviews.id", ondelete="SET NULL"), nullable=True)

    loyalty_program = relationship("LoyaltyProgram", back_populates="tiers")
    review = relationship("Review")


class MerchantLoyaltyReward(Base):
    __tablename__ = "merchant_loyalty_rewards"

    id = Column(String(64), primary_key=True, default=_new_id)
    loyalty_program_id = Column(String(64), ForeignKey("loyalty_programs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    review_id = Column(String(64), ForeignKey("reviews.id", ondelete="SET NULL"), nullable=True)

    loyalty_program = relationship("LoyaltyProgram", back_populates="rewards")
    review = relationship("Review")


# ─── 11. Customer Types ─────────────────────────────────────────────────────


class CustomerType(Base):
    __tablename__ = "customer_types"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    merchant_id = Column(String(64), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(32), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "merchant_id", name="uq_customer_type_user_merchant"),
        Index("ix_customer_types_user", "user_id"),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Offer Index (derived)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 12. Offer Index ────────────────────────────────────────────────────────


class OfferIndex(Base):
    __tablename__ = "offer_index"

    id = Column(String(64), primary_key=True, default=_new_id)
    kind = Column(String(16), nullable=False)
    merchant_id = Column(String(64), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)

    cashback_configuration_id = Column(
        String(64),
        ForeignKey("cashback_configurations.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    exclusive_offer_id = Column(
        String(64),
        ForeignKey("exclusive_offers.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    loyalty_program_id = Column(
        String(64),
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )

    is_active_snapshot = Column(Boolean, nullable=False)
    is_approved_snapshot = Column(Boolean, nullable=False)
    deleted_at_snapshot = Column(DateTime, nullable=True)
    budget_exhausted = Column(Boolean, nullable=False, default=False)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    max_cashback_percent_bps = Column(Integer, nullable=True)

    computed_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("kind IN ('CASHBACK', 'EXCLUSIVE', 'LOYALTY')", name="ck_offer_index_kind"),
        CheckConstraint(
            "(kind = 'CASHBACK' AND cashback_configuration_id IS NOT NULL"
            " AND exclusive_offer_id IS NULL AND loyalty_program_id IS NULL)"
            " OR (kind = 'EXCLUSIVE' AND exclusive_offer_id IS NOT NULL"
            " AND cashback_configuration_id IS NULL AND loyalty_program_id IS NULL)"
            " OR (kind = 'LOYALTY' AND loyalty_program_id IS NOT NULL"
            " AND cashback_configuration_id IS NULL AND exclusive_offer_id IS NULL)",
            name="ck_offer_index_single_source",
        ),
        Index(
            "ix_offer_index_kind_active_approved_budget",
            "kind",
            "is_active_snapshot",
            "is_approved_snapshot",
            "budget_exhausted",
        ),
        Index("ix_offer_index_merchant_kind", "merchant_id", "kind"),
    )



# ─── 13. Offer Index Customer Types ─────────────────────────────────────────


class OfferIndexCustomerType(Base):
    __tablename__ = "offer_index_customer_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    offer_index_id = Column(String(64), ForeignKey("offer_index.id", ondelete="CASCADE"), nullable=False)
    customer_type = Column(String(32), nullable=False)

    __table_args__ = (
        UniqueConstraint("offer_index_id", "customer_type", name="uq_offer_index_customer_type"),
        Index("ix_offer_index_customer_types_type", "customer_type", "offer_index_id"),
    )


# ─── 14. Offer Index Outlets ────────────────────────────────────────────────


class OfferIndexOutlet(Base):
    __tablename__ = "offer_index_outlets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    offer_index_id = Column(String(64), ForeignKey("offer_index.id", ondelete="CASCADE"), nullable=False)
    outlet_id = Column(String(64), ForeignKey("outlets.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        UniqueConstraint("offer_index_id", "outlet_id", name="uq_offer_index_outlet"),
        Index("ix_offer_index_outlets_outlet", "outlet_id", "offer_index_id"),
    )


# ─── 15. Loyalty Tier Index ─────────────────────────────────────────────────


class LoyaltyTierIndex(Base):
    __tablename__ = "loyalty_tier_index"

    id = Column(Integer, primary_key=True, autoincrement=True)
    offer_index_id = Column(String(64), ForeignKey("offer_index.id", ondelete="CASCADE"), nullable=False)
    tier_rank = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("tier_rank >= 0", name="ck_loyalty_tier_rank"),
        Index("ix_loyalty_tier_index_offer_rank", "offer_index_id", "tier_rank"),
    )


# ─── 16. User Merchant Profiles ─────────────────────────────────────────────


class UserMerchantProfile(Base):
    __tablename__ = "user_merchant_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    merchant_id = Column(String(64), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    customer_type = Column(String(32), nullable=False)
    rank = Column(Integer, nullable=False)
    computed_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "merchant_id", name="uq_user_merchant_profile"),
        Index("ix_user_merchant_profiles_merchant_rank", "merchant_id", "rank"),
    )


# ─── 17. Rebuild Log ────────────────────────────────────────────────────────


class OfferIndexRebuildLog(Base):
    __tablename__ = "offer_index_rebuild_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(32), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('RETRYING', 'FAILED')", name="ck_rebuild_log_status"),
        Index("ix_rebuild_log_status_created", "status", "created_at"),
        Index("ix_rebuild_log_entity_status", "entity_type", "entity_id", "status"),
    )
