"""
Eligibility Resolution Engine — which outlets can user U see offers at?

One statement over the index tables answers the question for a page:

  profile          the user's ranked customer type per merchant
  cashback/excl.   live offers in their date window whose customer-type rule
                   matches the profile; sort key = max cashback bps
  loyalty          live programs with a tier at or below the user's rank;
                   sort key = 0
  union            grouped per outlet, keeping the highest sort key
  outlet gates     active approved outlet, active merchant, approved live
                   paybill/till, optional category and text search
  keyset           (sort_key DESC, outlet_id ASC) after the cursor

Every optional input is bound as ``(:param IS NULL OR predicate)`` so the
statement text never changes with the inputs and the planner can reuse one
plan for all callers.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import Integer, Select, String, and_, exists, func, literal, literal_column, or_, select, union_all
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from db.models import (
    Merchant,
    MerchantStatus,
    OfferIndex,
    OfferIndexOutlet,
    OfferKind,
    Outlet,
    PaybillOrTill,
    Review,
    ReviewStatus,
    UserMerchantProfile,
    utcnow,
)
from eligibility.errors import OfferIndexRowError, OfferIndexUnavailableError
from eligibility.filters import Cursor, OfferFilters, configured_take, decode_cursor, encode_cursor, escape_like
from eligibility.rules import customer_type_rule_clause, date_window_clause, live_offer_clause, loyalty_tier_clause

logger = structlog.get_logger()


@dataclass(frozen=True)
class EligibleOutlet:
    outlet_id: str
    sort_key: int


@dataclass(frozen=True)
class OfferPage:
    items: list[EligibleOutlet]
    has_next_page: bool
    next_cursor: str | None


def user_profile_subquery(user_id: str):
    return (
        select(
            UserMerchantProfile.merchant_id,
            UserMerchantProfile.customer_type,
            UserMerchantProfile.rank,
        )
        .where(UserMerchantProfile.user_id == user_id)
        .subquery("profile")
    )


def build_eligible_outlets_query(
    user_id: str,
    filters: OfferFilters,
    cursor: Cursor | None,
    take: int,
    now: datetime,
) -> Select:
    profile = user_profile_subquery(user_id)
    sort_expr = func.coalesce(OfferIndex.max_cashback_percent_bps, 0)

    min_bps = literal(filters.min_bps, Integer)
    max_bps = literal(filters.max_bps, Integer)

    cashback_or_exclusive = (
        select(OfferIndexOutlet.outlet_id.label("outlet_id"), sort_expr.label("sort_key"))
        .select_from(OfferIndex)
        .join(OfferIndexOutlet, OfferIndexOutlet.offer_index_id == OfferIndex.id)
        .outerjoin(profile, profile.c.merchant_id == OfferIndex.merchant_id)
        .where(
            OfferIndex.kind.in_([OfferKind.CASHBACK.value, OfferKind.EXCLUSIVE.value]),
            live_offer_clause(),
            date_window_clause(now),
            or_(min_bps.is_(None), sort_expr >= min_bps),
            or_(max_bps.is_(None), sort_expr <= max_bps),
            customer_type_rule_clause(profile),
        )
    )

    loyalty = (
        select(OfferIndexOutlet.outlet_id.label("outlet_id"), literal_column("0", Integer).label("sort_key"))
        .select_from(OfferIndex)
        .join(OfferIndexOutlet, OfferIndexOutlet.offer_index_id == OfferIndex.id)
        .outerjoin(profile, profile.c.merchant_id == OfferIndex.merchant_id)
        .where(
            OfferIndex.kind == OfferKind.LOYALTY.value,
            live_offer_clause(),
            loyalty_tier_clause(profile),
        )
    )

    eligible = union_all(cashback_or_exclusive, loyalty).subquery("eligible_offers")
    ranked = (
        select(eligible.c.outlet_id, func.max(eligible.c.sort_key).label("sort_key"))
        .group_by(eligible.c.outlet_id)
        .subquery("eligible_outlets")
    )

    outlet_review = aliased(Review)
    paybill_review = aliased(Review)

    category = literal(filters.category, String)
    pattern = literal(f"%{escape_like(filters.search)}%" if filters.search else None, String)
    cursor_sort_key = literal(cursor.sort_key if cursor else None, Integer)
    cursor_outlet_id = literal(cursor.outlet_id if cursor else None, String)

    return (
        select(ranked.c.outlet_id, ranked.c.sort_key)
        .select_from(ranked)
        .join(Outlet, Outlet.id == ranked.c.outlet_id)
        .join(Merchant, Merchant.id == Outlet.merchant_id)
        .join(outlet_review, outlet_review.id == Outlet.review_id)
        .where(
            Outlet.is_active.is_(True),
            outlet_review.status == ReviewStatus.APPROVED.value,
            Merchant.status == MerchantStatus.ACTIVE.value,
            or_(category.is_(None), Merchant.category == category),
            or_(
                pattern.is_(None),
                Outlet.name.ilike(pattern, escape="\\"),
                func.coalesce(Outlet.description, "").ilike(pattern, escape="\\"),
                Merchant.business_name.ilike(pattern, escape="\\"),
            ),
            exists().where(
                PaybillOrTill.outlet_id == Outlet.id,
                PaybillOrTill.is_active.is_(True),
                PaybillOrTill.deleted_at.is_(None),
                paybill_review.id == PaybillOrTill.review_id,
                paybill_review.status == ReviewStatus.APPROVED.value,
            ),
            or_(
                cursor_sort_key.is_(None),
                ranked.c.sort_key < cursor_sort_key,
                and_(ranked.c.sort_key == cursor_sort_key, ranked.c.outlet_id > cursor_outlet_id),
            ),
        )
        .order_by(ranked.c.sort_key.desc(), ranked.c.outlet_id.asc())
        .limit(take + 1)
    )


def _decode_row(row: Any) -> EligibleOutlet:
    outlet_id, sort_key = row.outlet_id, row.sort_key
    if not isinstance(outlet_id, str) or not outlet_id:
        raise OfferIndexRowError(f"outlet_id must be a non-empty string, got {outlet_id!r}")
    if isinstance(sort_key, bool) or not isinstance(sort_key, int):
        raise OfferIndexRowError(f"sort_key must be an integer, got {sort_key!r}")
    return EligibleOutlet(outlet_id=outlet_id, sort_key=sort_key)


async def resolve_eligible_outlets(
    db: AsyncSession,
    user_id: str,
    filters: OfferFilters | None = None,
    cursor: str | Cursor | None = None,
    take: int | None = None,
    now: datetime | None = None,
) -> OfferPage:
    """Return one page of outlets eligible for ``user_id``, best cashback first."""
    filters = filters or OfferFilters()
    take = configured_take(take)
    if isinstance(cursor, str) or cursor is None:
        cursor = decode_cursor(cursor)
    now = now or utcnow()

    query = build_eligible_outlets_query(user_id, filters, cursor, take, now)
    try:
        result = await db.execute(query)
    except (OperationalError, InterfaceError, OSError) as exc:
        logger.error("offers.resolve_unavailable", user_id=user_id, error=str(exc))
        raise OfferIndexUnavailableError("offer index store unavailable") from exc

    rows = [_decode_row(row) for row in result.all()]
    items = rows[:take]
    has_next_page = len(rows) > take
    next_cursor = encode_cursor(items[-1].sort_key, items[-1].outlet_id) if has_next_page and items else None

    logger.debug("offers.resolved", user_id=user_id, count=len(items), has_next_page=has_next_page)
    return OfferPage(items=items, has_next_page=has_next_page, next_cursor=next_cursor)


async def load_outlets_in_order(db: AsyncSession, outlet_ids: list[str]) -> list[Outlet]:
    """Fetch outlets (with merchant) for display, preserving resolution order."""
    if not outlet_ids:
        return []
    result = await db.execute(
        select(Outlet)
        .options(selectinload(Outlet.merchant))
        .where(Outlet.id.in_(outlet_ids))
        .execution_options(populate_existing=True)
    )
    by_id = {outlet.id: outlet for outlet in result.scalars().all()}
    return [by_id[outlet_id] for outlet_id in outlet_ids if outlet_id in by_id]
