"""
Offer Index Recompute Engine — derive index rows from current source state.

Every rebuild is a full re-derivation:
  1. Load the source entity with everything eligibility depends on
  2. Upsert the OfferIndex row keyed on the source id
  3. Delete and recreate child rows (customer types / outlets / tier ranks)
  4. Commit once, so readers never see a parent with partial children

The result depends only on source state, never on prior index state, so
running a rebuild twice (or concurrently) converges to the same rows.
A missing source entity is a no-op to keep re-delivery after deletion safe.
"""

from typing import Any, Iterable

import structlog
from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute, selectinload

from db.models import (
    CashbackConfiguration,
    CashbackConfigurationTier,
    CustomerType,
    ExclusiveOffer,
    LoyaltyProgram,
    LoyaltyTier,
    LoyaltyTierIndex,
    Merchant,
    MerchantLoyaltyReward,
    OfferIndex,
    OfferIndexCustomerType,
    OfferIndexOutlet,
    OfferKind,
    UserMerchantProfile,
    utcnow,
)
from eligibility.customer_types import customer_type_rank
from eligibility.rules import budget_exhausted, is_approved, points_limit_exhausted

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────────────────
# Row replacement helpers
# ──────────────────────────────────────────────────────────────────────────


async def _upsert_offer_index(
    db: AsyncSession,
    source_column: InstrumentedAttribute,
    source_id: str,
    values: dict[str, Any],
) -> OfferIndex:
    result = await db.execute(select(OfferIndex).where(source_column == source_id))
    index = result.scalar_one_or_none()
    if index is None:
        index = OfferIndex(**{source_column.key: source_id}, **values)
        db.add(index)
    else:
        for field, value in values.items():
            setattr(index, field, value)
        index.computed_at = utcnow()
    await db.flush()
    return index


async def _replace_customer_types(db: AsyncSession, offer_index_id: str, customer_types: Iterable[str] | None) -> int:
    await db.execute(delete(OfferIndexCustomerType).where(OfferIndexCustomerType.offer_index_id == offer_index_id))
    rows = [
        {"offer_index_id": offer_index_id, "customer_type": customer_type}
        for customer_type in sorted(set(customer_types or []))
    ]
    if rows:
        await db.execute(insert(OfferIndexCustomerType), rows)
    return len(rows)


async def _replace_outlets(db: AsyncSession, offer_index_id: str, outlet_ids: Iterable[str]) -> int:
    await db.execute(delete(OfferIndexOutlet).where(OfferIndexOutlet.offer_index_id == offer_index_id))
    rows = [{"offer_index_id": offer_index_id, "outlet_id": outlet_id} for outlet_id in sorted(set(outlet_ids))]
    if rows:
        await db.execute(insert(OfferIndexOutlet), rows)
    return len(rows)


async def _replace_tier_ranks(db: AsyncSession, offer_index_id: str, tier_ranks: Iterable[int]) -> int:
    await db.execute(delete(LoyaltyTierIndex).where(LoyaltyTierIndex.offer_index_id == offer_index_id))
    rows = [{"offer_index_id": offer_index_id, "tier_rank": rank} for rank in sorted(set(tier_ranks))]
    if rows:
        await db.execute(insert(LoyaltyTierIndex), rows)
    return len(rows)


# ──────────────────────────────────────────────────────────────────────────
# Cashback / Exclusive
# ──────────────────────────────────────────────────────────────────────────


async def rebuild_cashback_index(db: AsyncSession, cashback_configuration_id: str) -> dict:
    result = await db.execute(
        select(CashbackConfiguration)
        .options(
            selectinload(CashbackConfiguration.review),
            selectinload(CashbackConfiguration.outlets),
            selectinload(CashbackConfiguration.tiers).selectinload(CashbackConfigurationTier.review),
        )
        .where(CashbackConfiguration.id == cashback_configuration_id)
        .execution_options(populate_existing=True)
    )
    config = result.scalar_one_or_none()
    if config is None:
        logger.debug("offer_index.cashback_missing", cashback_configuration_id=cashback_configuration_id)
        return {"status": "skipped", "reason": "not_found"}

    live_tiers = [t for t in config.tiers if t.is_active and t.deleted_at is None and is_approved(t.review)]
    max_bps = max((t.percentage for t in live_tiers), default=0)

    values = {
        "kind": OfferKind.CASHBACK.value,
        "merchant_id": config.merchant_id,
        "is_active_snapshot": bool(config.is_active),
        "is_approved_snapshot": is_approved(config.review),
        "deleted_at_snapshot": config.deleted_at,
        "budget_exhausted": budget_exhausted(config.net_cashback_budget, config.used_cashback_budget),
        "start_date": config.start_date,
        "end_date": config.end_date,
        "max_cashback_percent_bps": max_bps,
    }

    try:
        index = await _upsert_offer_index(db, OfferIndex.cashback_configuration_id, config.id, values)
        type_count = await _replace_customer_types(db, index.id, config.eligible_customer_types)
        outlet_count = await _replace_outlets(db, index.id, [o.id for o in config.outlets])
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    summary = {
        "status": "success",
        "offer_index_id": index.id,
        "customer_types": type_count,
        "outlets": outlet_count,
        "max_cashback_percent_bps": max_bps,
        "budget_exhausted": values["budget_exhausted"],
    }
    logger.info("offer_index.cashback_rebuilt", cashback_configuration_id=config.id, **summary)
    return summary


async def rebuild_exclusive_index(db: AsyncSession, exclusive_offer_id: str) -> dict:
    result = await db.execute(
        select(ExclusiveOffer)
        .options(selectinload(ExclusiveOffer.review), selectinload(ExclusiveOffer.outlets))
        .where(ExclusiveOffer.id == exclusive_offer_id)
        .execution_options(populate_existing=True)
    )
    offer = result.scalar_one_or_none()
    if offer is None:
        logger.debug("offer_index.exclusive_missing", exclusive_offer_id=exclusive_offer_id)
        return {"status": "skipped", "reason": "not_found"}
    if not offer.merchant_id:
        logger.warning("offer_index.exclusive_without_merchant", exclusive_offer_id=exclusive_offer_id)
        return {"status": "skipped", "reason": "no_merchant"}

    values = {
        "kind": OfferKind.EXCLUSIVE.value,
        "merchant_id": offer.merchant_id,
        "is_active_snapshot": bool(offer.is_active),
        "is_approved_snapshot": is_approved(offer.review),
        "deleted_at_snapshot": offer.deleted_at,
        "budget_exhausted": budget_exhausted(offer.net_offer_budget, offer.used_offer_budget),
        "start_date": offer.start_date,
        "end_date": offer.end_date,
        "max_cashback_percent_bps": None,
    }

    try:
        index = await _upsert_offer_index(db, OfferIndex.exclusive_offer_id, offer.id, values)
        type_count = await _replace_customer_types(db, index.id, offer.eligible_customer_types)
        outlet_count = await _replace_outlets(db, index.id, [o.id for o in offer.outlets])
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    summary = {
        "status": "success",
        "offer_index_id": index.id,
        "customer_types": type_count,
        "outlets": outlet_count,
        "budget_exhausted": values["budget_exhausted"],
    }
    logger.info("offer_index.exclusive_rebuilt", exclusive_offer_id=offer.id, **summary)
    return summary


# ──────────────────────────────────────────────────────────────────────────
# Loyalty
# ──────────────────────────────────────────────────────────────────────────


async def rebuild_loyalty_index_by_merchant(db: AsyncSession, merchant_id: str) -> dict:
    """
    Snapshot a merchant's loyalty program.

    The program only counts as approved when it is itself approved and has
    at least one active approved reward and at least one qualifying tier;
    a program with nothing to redeem or nobody able to reach a tier is
    never eligible, even though its outlets are still mapped.
    """
    result = await db.execute(
        select(Merchant)
        .options(
            selectinload(Merchant.outlets),
            selectinload(Merchant.loyalty_program).options(
                selectinload(LoyaltyProgram.review),
                selectinload(LoyaltyProgram.tiers).selectinload(LoyaltyTier.review),
                selectinload(LoyaltyProgram.rewards).selectinload(MerchantLoyaltyReward.review),
            ),
        )
        .where(Merchant.id == merchant_id)
        .execution_options(populate_existing=True)
    )
    merchant = result.scalar_one_or_none()
    if merchant is None or merchant.loyalty_program is None:
        logger.debug("offer_index.loyalty_missing", merchant_id=merchant_id)
        return {"status": "skipped", "reason": "not_found"}

    program = merchant.loyalty_program
    tier_ranks = [
        customer_type_rank(tier.min_customer_type)
        for tier in program.tiers
        if tier.is_active and tier.deleted_at is None and is_approved(tier.review)
    ]
    has_rewards = any(reward.is_active and is_approved(reward.review) for reward in program.rewards)
    approved = is_approved(program.review) and has_rewards and len(tier_ranks) > 0

    values = {
        "kind": OfferKind.LOYALTY.value,
        "merchant_id": merchant.id,
        "is_active_snapshot": bool(program.is_active),
        "is_approved_snapshot": approved,
        "deleted_at_snapshot": None,
        "budget_exhausted": points_limit_exhausted(program.points_issued_limit, program.points_used_in_period),
        "start_date": None,
        "end_date": None,
        "max_cashback_percent_bps": None,
    }

    try:
        index = await _upsert_offer_index(db, OfferIndex.loyalty_program_id, program.id, values)
        outlet_count = await _replace_outlets(db, index.id, [o.id for o in merchant.outlets])
        tier_count = await _replace_tier_ranks(db, index.id, tier_ranks)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    summary = {
        "status": "success",
        "offer_index_id": index.id,
        "outlets": outlet_count,
        "tier_ranks": tier_count,
        "is_approved_snapshot": approved,
        "budget_exhausted": values["budget_exhausted"],
    }
    logger.info("offer_index.loyalty_rebuilt", merchant_id=merchant.id, **summary)
    return summary


async def rebuild_loyalty_indexes_for_all_merchants(db: AsyncSession) -> dict:
    """Broad sweep used by FULL_REBUILD: re-run the loyalty rebuild for every merchant."""
    result = await db.execute(select(Merchant.id).order_by(Merchant.id))
    merchant_ids = [row.id for row in result.all()]

    rebuilt = 0
    for merchant_id in merchant_ids:
        merchant_summary = await rebuild_loyalty_index_by_merchant(db, merchant_id)
        if merchant_summary["status"] == "success":
            rebuilt += 1

    summary = {"status": "success", "merchant_count": len(merchant_ids), "rebuilt_count": rebuilt}
    logger.info("offer_index.full_rebuild_completed", **summary)
    return summary


# ──────────────────────────────────────────────────────────────────────────
# User profiles
# ──────────────────────────────────────────────────────────────────────────


async def rebuild_user_merchant_profiles_for_user(db: AsyncSession, user_id: str) -> dict:
    result = await db.execute(
        select(CustomerType.merchant_id, CustomerType.type).where(CustomerType.user_id == user_id)
    )
    assignments = result.all()

    rows = [
        {
            "user_id": user_id,
            "merchant_id": row.merchant_id,
            "customer_type": row.type,
            "rank": customer_type_rank(row.type),
        }
        for row in assignments
    ]

    try:
        await db.execute(delete(UserMerchantProfile).where(UserMerchantProfile.user_id == user_id))
        if rows:
            await db.execute(insert(UserMerchantProfile), rows)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("offer_index.profiles_rebuilt", user_id=user_id, profile_count=len(rows))
    return {"status": "success", "profiles": len(rows)}
