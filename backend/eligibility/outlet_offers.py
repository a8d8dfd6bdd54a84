"""
Per-outlet offer lookup — which concrete offers make a page item eligible.

Resolution only tells us *that* an outlet qualifies. The listing endpoint
also shows *what* the user gets there, so for the outlets on a page we run
the same gates per kind and join back to the source tables for names.
"""

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    CashbackConfiguration,
    ExclusiveOffer,
    LoyaltyProgram,
    OfferIndex,
    OfferIndexOutlet,
    OfferKind,
    utcnow,
)
from eligibility.resolver import user_profile_subquery
from eligibility.rules import customer_type_rule_clause, date_window_clause, live_offer_clause, loyalty_tier_clause


@dataclass
class OutletOffers:
    cashback_configurations: list[dict] = field(default_factory=list)
    exclusive_offers: list[dict] = field(default_factory=list)
    loyalty_program: dict | None = None

    def to_dict(self) -> dict:
        return {
            "cashback_configurations": self.cashback_configurations,
            "exclusive_offers": self.exclusive_offers,
            "loyalty_program": self.loyalty_program,
        }


async def eligible_offers_for_outlets(
    db: AsyncSession,
    user_id: str,
    outlet_ids: list[str],
    now: datetime | None = None,
) -> dict[str, OutletOffers]:
    """Map each outlet id to the offers ``user_id`` is eligible for there."""
    offers = {outlet_id: OutletOffers() for outlet_id in outlet_ids}
    if not outlet_ids:
        return offers
    now = now or utcnow()
    profile = user_profile_subquery(user_id)

    cashback = await db.execute(
        select(OfferIndexOutlet.outlet_id, CashbackConfiguration.id, CashbackConfiguration.name)
        .select_from(OfferIndex)
        .join(OfferIndexOutlet, OfferIndexOutlet.offer_index_id == OfferIndex.id)
        .join(CashbackConfiguration, CashbackConfiguration.id == OfferIndex.cashback_configuration_id)
        .outerjoin(profile, profile.c.merchant_id == OfferIndex.merchant_id)
        .where(
            OfferIndex.kind == OfferKind.CASHBACK.value,
            OfferIndexOutlet.outlet_id.in_(outlet_ids),
            live_offer_clause(),
            date_window_clause(now),
            customer_type_rule_clause(profile),
        )
        .order_by(OfferIndex.max_cashback_percent_bps.desc(), CashbackConfiguration.id)
    )
    for outlet_id, config_id, name in cashback.all():
        offers[outlet_id].cashback_configurations.append({"id": config_id, "name": name})

    exclusive = await db.execute(
        select(OfferIndexOutlet.outlet_id, ExclusiveOffer.id, ExclusiveOffer.name, ExclusiveOffer.description)
        .select_from(OfferIndex)
        .join(OfferIndexOutlet, OfferIndexOutlet.offer_index_id == OfferIndex.id)
        .join(ExclusiveOffer, ExclusiveOffer.id == OfferIndex.exclusive_offer_id)
        .outerjoin(profile, profile.c.merchant_id == OfferIndex.merchant_id)
        .where(
            OfferIndex.kind == OfferKind.EXCLUSIVE.value,
            OfferIndexOutlet.outlet_id.in_(outlet_ids),
            live_offer_clause(),
            date_window_clause(now),
            customer_type_rule_clause(profile),
        )
        .order_by(ExclusiveOffer.name, ExclusiveOffer.id)
    )
    for outlet_id, offer_id, name, description in exclusive.all():
        offers[outlet_id].exclusive_offers.append({"id": offer_id, "name": name, "description": description})

    loyalty = await db.execute(
        select(OfferIndexOutlet.outlet_id, LoyaltyProgram.id, LoyaltyProgram.name)
        .select_from(OfferIndex)
        .join(OfferIndexOutlet, OfferIndexOutlet.offer_index_id == OfferIndex.id)
        .join(LoyaltyProgram, LoyaltyProgram.id == OfferIndex.loyalty_program_id)
        .outerjoin(profile, profile.c.merchant_id == OfferIndex.merchant_id)
        .where(
            OfferIndex.kind == OfferKind.LOYALTY.value,
            OfferIndexOutlet.outlet_id.in_(outlet_ids),
            live_offer_clause(),
            loyalty_tier_clause(profile),
        )
        .order_by(LoyaltyProgram.id)
    )
    for outlet_id, program_id, name in loyalty.all():
        # One program per merchant, so the first row wins.
        if offers[outlet_id].loyalty_program is None:
            offers[outlet_id].loyalty_program = {"id": program_id, "name": name}

    return offers
