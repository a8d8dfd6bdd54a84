"""
Offer listing service — resolve, decorate and cache one page of offers.

Glue between the resolution engine, the per-outlet lookup and the page
cache. Only first pages are cached; cursor pages always hit the store.
"""

from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from eligibility.cache import OfferPageCache, offer_page_cache_key
from eligibility.filters import OfferFilters, configured_take, decode_cursor
from eligibility.outlet_offers import OutletOffers, eligible_offers_for_outlets
from eligibility.resolver import load_outlets_in_order, resolve_eligible_outlets

logger = structlog.get_logger()


async def fetch_offers_page(
    db: AsyncSession,
    cache: OfferPageCache,
    user_id: str,
    filters: OfferFilters | None = None,
    cursor: str | None = None,
    take: int | None = None,
    now: datetime | None = None,
) -> dict:
    filters = filters or OfferFilters()
    take = configured_take(take)
    decoded = decode_cursor(cursor)

    cache_key = offer_page_cache_key(user_id, take, filters) if decoded is None else None
    if cache_key is not None:
        cached = await cache.get(cache_key)
        if cached is not None:
            logger.debug("offers.cache_hit", user_id=user_id, key=cache_key)
            return cached

    page = await resolve_eligible_outlets(db, user_id, filters=filters, cursor=decoded, take=take, now=now)
    outlet_ids = [item.outlet_id for item in page.items]
    sort_keys = {item.outlet_id: item.sort_key for item in page.items}

    outlets = await load_outlets_in_order(db, outlet_ids)
    offers = await eligible_offers_for_outlets(db, user_id, [o.id for o in outlets], now=now)

    nodes = []
    for outlet in outlets:
        merchant = outlet.merchant
        nodes.append(
            {
                "id": outlet.id,
                "name": outlet.name,
                "description": outlet.description,
                "sort_key": sort_keys[outlet.id],
                "merchant": {
                    "id": merchant.id,
                    "business_name": merchant.business_name,
                    "category": merchant.category,
                },
                **offers.get(outlet.id, OutletOffers()).to_dict(),
            }
        )

    result = {"nodes": nodes, "next_cursor": page.next_cursor, "has_next_page": page.has_next_page}
    if cache_key is not None:
        await cache.set(cache_key, result)
    return result
