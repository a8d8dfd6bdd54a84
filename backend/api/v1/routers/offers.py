"""
Offers Router — paginated listing of outlets the caller can redeem offers at.
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user_id, get_db, get_offer_cache
from eligibility.cache import OfferPageCache
from eligibility.filters import MAX_BPS, OfferFilters
from eligibility.service import fetch_offers_page

router = APIRouter(prefix="/api/v1/offers", tags=["offers"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class MerchantSummary(BaseModel):
    id: str
    business_name: str
    category: str


class CashbackSummary(BaseModel):
    id: str
    name: str


class ExclusiveSummary(BaseModel):
    id: str
    name: str
    description: str | None = None


class LoyaltySummary(BaseModel):
    id: str
    name: str


class OfferNode(BaseModel):
    id: str
    name: str
    description: str | None
    sort_key: int
    merchant: MerchantSummary
    cashback_configurations: list[CashbackSummary] = []
    exclusive_offers: list[ExclusiveSummary] = []
    loyalty_program: LoyaltySummary | None = None


class OfferPageResponse(BaseModel):
    nodes: list[OfferNode]
    next_cursor: str | None
    has_next_page: bool


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=OfferPageResponse)
async def list_offers(
    search: str | None = Query(None, max_length=200),
    category: str | None = Query(None, max_length=100),
    min_bps: int | None = Query(None, ge=0, le=MAX_BPS),
    max_bps: int | None = Query(None, ge=0, le=MAX_BPS),
    take: int | None = None,
    cursor: str | None = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: OfferPageCache = Depends(get_offer_cache),
):
    """
    List outlets with at least one offer the caller is eligible for.

    Ordered by best cashback percentage, then outlet id. ``take`` is clamped
    to the configured bounds; an unreadable ``cursor`` restarts at page one.
    """
    filters = OfferFilters.build(search=search, category=category, min_bps=min_bps, max_bps=max_bps)
    return await fetch_offers_page(db, cache, user_id, filters=filters, cursor=cursor, take=take)
