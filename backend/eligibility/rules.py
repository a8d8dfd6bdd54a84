"""
Eligibility Rules — approval, budget and customer-type gates.

The same rules are expressed twice: as plain functions (used by the recompute
engine when snapshotting source offers, and as the reference form of the
customer-type and tier rules), and as SQL predicates over the index tables
used on the read path. Keep the two in step; tests check them against each
other.
"""

import enum
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from sqlalchemy import and_, exists, func, or_
from sqlalchemy.orm import aliased
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.selectable import Subquery

from db.models import LoyaltyTierIndex, OfferIndex, OfferIndexCustomerType, ReviewStatus
from eligibility.customer_types import ALL, NON_CUSTOMER

# ──────────────────────────────────────────────────────────────────────────
# Snapshot rules (recompute side)
# ──────────────────────────────────────────────────────────────────────────


def is_approved(review: Any) -> bool:
    return review is not None and review.status == ReviewStatus.APPROVED


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def budget_exhausted(net: Any, used: Any) -> bool:
    """
    A monetary budget is available only while ``used < net``.

    A net budget of 0 is therefore always exhausted. Counters that cannot be
    read as numbers fail closed.
    """
    try:
        return not (_to_decimal(used) < _to_decimal(net))
    except (InvalidOperation, TypeError, ValueError):
        return True


def points_limit_exhausted(limit: Any, used: Any) -> bool:
    """Points issuance is exhausted once ``used >= limit``. A null limit is unlimited."""
    if limit is None:
        return False
    try:
        return _to_decimal(used) >= _to_decimal(limit)
    except (InvalidOperation, TypeError, ValueError):
        return True


class CustomerTypeMatch(enum.StrEnum):
    ALL = "all"
    TYPE = "type"
    NON_CUSTOMER = "non_customer"
    NONE = "none"


def match_customer_type_rule(eligible_types: Iterable[str], profile_type: str | None) -> CustomerTypeMatch:
    """
    Classify how a user's profile at a merchant matches an offer's eligible types.

    ``profile_type`` is None when the user has no profile at the merchant.
    """
    types = set(eligible_types)
    if ALL in types:
        return CustomerTypeMatch.ALL
    if profile_type is not None:
        return CustomerTypeMatch.TYPE if profile_type in types else CustomerTypeMatch.NONE
    return CustomerTypeMatch.NON_CUSTOMER if NON_CUSTOMER in types else CustomerTypeMatch.NONE


# ──────────────────────────────────────────────────────────────────────────
# Index predicates (read side)
# ──────────────────────────────────────────────────────────────────────────


def live_offer_clause() -> ColumnElement[bool]:
    """Active, approved, not deleted and with budget left."""
    return and_(
        OfferIndex.is_active_snapshot.is_(True),
        OfferIndex.is_approved_snapshot.is_(True),
        OfferIndex.deleted_at_snapshot.is_(None),
        OfferIndex.budget_exhausted.is_(False),
    )


def date_window_clause(now: datetime) -> ColumnElement[bool]:
    """Open-ended offers (both bounds null) or ``start <= now <= end``."""
    return or_(
        and_(OfferIndex.start_date.is_(None), OfferIndex.end_date.is_(None)),
        and_(OfferIndex.start_date <= now, OfferIndex.end_date >= now),
    )


def customer_type_rule_clause(profile: Subquery) -> ColumnElement[bool]:
    """SQL form of ``match_customer_type_rule(...) != NONE`` against a LEFT JOINed profile."""
    all_type = aliased(OfferIndexCustomerType)
    same_type = aliased(OfferIndexCustomerType)
    non_customer = aliased(OfferIndexCustomerType)
    return or_(
        exists().where(
            all_type.offer_index_id == OfferIndex.id,
            all_type.customer_type == ALL,
        ),
        and_(
            profile.c.customer_type.is_not(None),
            exists().where(
                same_type.offer_index_id == OfferIndex.id,
                same_type.customer_type == profile.c.customer_type,
            ),
        ),
        and_(
            profile.c.customer_type.is_(None),
            exists().where(
                non_customer.offer_index_id == OfferIndex.id,
                non_customer.customer_type == NON_CUSTOMER,
            ),
        ),
    )


def loyalty_tier_clause(profile: Subquery) -> ColumnElement[bool]:
    """At least one qualifying tier at or below the user's rank (0 without a profile)."""
    return exists().where(
        LoyaltyTierIndex.offer_index_id == OfferIndex.id,
        LoyaltyTierIndex.tier_rank <= func.coalesce(profile.c.rank, 0),
    )
