"""
Tests for the eligibility resolution engine.

Covers:
  - End-to-end scenarios A (All) and B (type upgrade)
  - Outlet, merchant, paybill and date-window gates
  - Loyalty tier ranks
  - Percentage, category and text filters (with LIKE escaping)
  - SQL customer-type and tier predicates agree with the plain rules
  - Ordering and keyset pagination completeness
  - Statement shape stability and store-boundary errors
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from db.models import CustomerType
from eligibility.customer_types import customer_type_rank, is_tier_eligible
from eligibility.errors import OfferIndexRowError, OfferIndexUnavailableError
from eligibility.filters import Cursor, OfferFilters, encode_cursor
from eligibility.recompute import (
    rebuild_cashback_index,
    rebuild_exclusive_index,
    rebuild_loyalty_index_by_merchant,
    rebuild_user_merchant_profiles_for_user,
)
from eligibility.resolver import _decode_row, build_eligible_outlets_query, resolve_eligible_outlets
from eligibility.rules import CustomerTypeMatch, match_customer_type_rule

USER_ID = "user-0001"


async def _visible(db, user_id=USER_ID, now=None, **filters):
    page = await resolve_eligible_outlets(db, user_id, OfferFilters.build(**filters), take=50, now=now)
    return [item.outlet_id for item in page.items]


# ── Scenarios ──────────────────────────────────────────────────────────


class TestScenarios:
    @pytest.mark.asyncio
    async def test_all_offer_visible_with_and_without_profile(self, test_db, seed):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        config = await seed.cashback(merchant, [outlet], customer_types=("All",))
        await seed.customer_type("profiled-user", merchant, "Regular")
        await rebuild_cashback_index(test_db, config.id)
        await rebuild_user_merchant_profiles_for_user(test_db, "profiled-user")

        assert await _visible(test_db, "anonymous-user") == [outlet.id]
        assert await _visible(test_db, "profiled-user") == [outlet.id]

    @pytest.mark.asyncio
    async def test_vip_offer_appears_after_upgrade(self, test_db, seed):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        config = await seed.cashback(merchant, [outlet], customer_types=("Vip",))
        await seed.customer_type(USER_ID, merchant, "New")
        await rebuild_cashback_index(test_db, config.id)
        await rebuild_user_merchant_profiles_for_user(test_db, USER_ID)

        assert await _visible(test_db) == []

        await test_db.execute(
            update(CustomerType).where(CustomerType.user_id == USER_ID).values(type="Vip")
        )
        await test_db.commit()
        await rebuild_user_merchant_profiles_for_user(test_db, USER_ID)

        assert await _visible(test_db) == [outlet.id]

    @pytest.mark.asyncio
    async def test_non_customer_offer_only_without_profile(self, test_db, seed):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        offer = await seed.exclusive(merchant, [outlet], customer_types=("NonCustomer",))
        await seed.customer_type("regular-user", merchant, "Regular")
        await rebuild_exclusive_index(test_db, offer.id)
        await rebuild_user_merchant_profiles_for_user(test_db, "regular-user")

        assert await _visible(test_db, "new-user") == [outlet.id]
        assert await _visible(test_db, "regular-user") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("used,visible", [(100, False), (99, True)])
    async def test_exhausted_budget_hides_outlet(self, test_db, seed, used, visible):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        config = await seed.cashback(merchant, [outlet], net=100, used=used)
        await rebuild_cashback_index(test_db, config.id)

        assert (await _visible(test_db) == [outlet.id]) is visible


# ── Gates ──────────────────────────────────────────────────────────────


class TestGates:
    @pytest.mark.asyncio
    async def test_outlet_merchant_and_paybill_gates(self, test_db, seed, now):
        good = await seed.merchant(business_name="Good")
        suspended = await seed.merchant(business_name="Suspended", status="Suspended")

        visible = await seed.outlet(good, name="Visible")
        inactive = await seed.outlet(good, name="Inactive", is_active=False)
        unapproved = await seed.outlet(good, name="Unapproved", approved=False)
        no_paybill = await seed.outlet(good, name="No paybill", with_paybill=False)
        deleted_paybill = await seed.outlet(good, name="Deleted paybill", with_paybill=False)
        await seed.paybill(deleted_paybill, deleted_at=now)
        pending_paybill = await seed.outlet(good, name="Pending paybill", with_paybill=False)
        await seed.paybill(pending_paybill, approved=False)
        suspended_outlet = await seed.outlet(suspended, name="Suspended outlet")

        c1 = await seed.cashback(
            good, [visible, inactive, unapproved, no_paybill, deleted_paybill, pending_paybill]
        )
        c2 = await seed.cashback(suspended, [suspended_outlet])
        await rebuild_cashback_index(test_db, c1.id)
        await rebuild_cashback_index(test_db, c2.id)

        assert await _visible(test_db) == [visible.id]

    @pytest.mark.asyncio
    async def test_unapproved_or_inactive_offer_hidden(self, test_db, seed):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        c1 = await seed.cashback(merchant, [outlet], approved=False)
        c2 = await seed.cashback(merchant, [outlet], is_active=False)
        await rebuild_cashback_index(test_db, c1.id)
        await rebuild_cashback_index(test_db, c2.id)

        assert await _visible(test_db) == []

    @pytest.mark.asyncio
    async def test_date_window(self, test_db, seed, now):
        merchant = await seed.merchant()
        current = await seed.outlet(merchant, name="Current")
        expired = await seed.outlet(merchant, name="Expired")
        future = await seed.outlet(merchant, name="Future")
        half_open = await seed.outlet(merchant, name="Half open")
        configs = [
            await seed.cashback(merchant, [current], start_date=now - timedelta(days=1), end_date=now + timedelta(days=1)),
            await seed.cashback(merchant, [expired], start_date=now - timedelta(days=9), end_date=now - timedelta(days=2)),
            await seed.cashback(merchant, [future], start_date=now + timedelta(days=2), end_date=now + timedelta(days=9)),
            # Only one bound set never matches the window rule.
            await seed.cashback(merchant, [half_open], start_date=now - timedelta(days=1)),
        ]
        for config in configs:
            await rebuild_cashback_index(test_db, config.id)

        assert await _visible(test_db, now=now) == [current.id]


# ── Loyalty ────────────────────────────────────────────────────────────


class TestLoyalty:
    @pytest.mark.asyncio
    async def test_tier_rank_gate(self, test_db, seed):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        await seed.loyalty(merchant, tiers=("Regular",))
        await seed.customer_type("occasional", merchant, "Occasional")
        await seed.customer_type("vip", merchant, "Vip")
        await rebuild_loyalty_index_by_merchant(test_db, merchant.id)
        for user_id in ("occasional", "vip"):
            await rebuild_user_merchant_profiles_for_user(test_db, user_id)

        assert await _visible(test_db, "stranger") == []
        assert await _visible(test_db, "occasional") == []
        assert await _visible(test_db, "vip") == [outlet.id]

    @pytest.mark.asyncio
    async def test_non_customer_tier_open_to_everyone(self, test_db, seed):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        await seed.loyalty(merchant, tiers=("NonCustomer",))
        await rebuild_loyalty_index_by_merchant(test_db, merchant.id)

        page = await resolve_eligible_outlets(test_db, "stranger")
        assert [(i.outlet_id, i.sort_key) for i in page.items] == [(outlet.id, 0)]

    @pytest.mark.asyncio
    async def test_program_without_rewards_contributes_nothing(self, test_db, seed):
        merchant = await seed.merchant()
        await seed.outlet(merchant)
        await seed.loyalty(merchant, tiers=("NonCustomer",), rewards=0)
        await rebuild_loyalty_index_by_merchant(test_db, merchant.id)

        assert await _visible(test_db, "stranger") == []


# ── Filters ────────────────────────────────────────────────────────────


class TestFilters:
    @pytest.mark.asyncio
    async def test_percentage_range_is_inclusive(self, test_db, seed):
        merchant = await seed.merchant()
        low = await seed.outlet(merchant, name="Low", id="o-low")
        mid = await seed.outlet(merchant, name="Mid", id="o-mid")
        high = await seed.outlet(merchant, name="High", id="o-high")
        for outlet, bps in ((low, 100), (mid, 500), (high, 900)):
            config = await seed.cashback(merchant, [outlet], tiers=(bps,))
            await rebuild_cashback_index(test_db, config.id)

        assert await _visible(test_db, min_bps=500) == [high.id, mid.id]
        assert await _visible(test_db, max_bps=500) == [mid.id, low.id]
        assert await _visible(test_db, min_bps=500, max_bps=500) == [mid.id]

    @pytest.mark.asyncio
    async def test_category(self, test_db, seed):
        food = await seed.merchant(business_name="Kibanda", category="Food")
        travel = await seed.merchant(business_name="Safari Co", category="Travel")
        food_outlet = await seed.outlet(food)
        travel_outlet = await seed.outlet(travel)
        for merchant, outlet in ((food, food_outlet), (travel, travel_outlet)):
            config = await seed.cashback(merchant, [outlet])
            await rebuild_cashback_index(test_db, config.id)

        assert await _visible(test_db, category="Travel") == [travel_outlet.id]
        assert await _visible(test_db, category="  ") != []

    @pytest.mark.asyncio
    async def test_search_fields_and_case(self, test_db, seed):
        mama = await seed.merchant(business_name="Mama Mboga")
        other = await seed.merchant(business_name="Duka Kuu")
        by_merchant = await seed.outlet(mama, name="Stall 1", id="o-1")
        by_name = await seed.outlet(other, name="Tusker Corner", id="o-2")
        by_description = await seed.outlet(other, name="Kiosk", description="Fresh MANDAZI daily", id="o-3")
        config_a = await seed.cashback(mama, [by_merchant])
        config_b = await seed.cashback(other, [by_name, by_description])
        await rebuild_cashback_index(test_db, config_a.id)
        await rebuild_cashback_index(test_db, config_b.id)

        assert await _visible(test_db, search="mama") == [by_merchant.id]
        assert await _visible(test_db, search="TUSKER") == [by_name.id]
        assert await _visible(test_db, search="mandazi") == [by_description.id]

    @pytest.mark.asyncio
    async def test_search_wildcards_match_literally(self, test_db, seed):
        merchant = await seed.merchant(business_name="Deals")
        percent = await seed.outlet(merchant, name="50% Off Corner", id="o-percent")
        plain = await seed.outlet(merchant, name="500 Offers", id="o-plain")
        underscore = await seed.outlet(merchant, name="snake_case shop", id="o-underscore")
        config = await seed.cashback(merchant, [percent, plain, underscore])
        await rebuild_cashback_index(test_db, config.id)

        assert await _visible(test_db, search="50%") == [percent.id]
        assert await _visible(test_db, search="e_c") == [underscore.id]


# ── SQL predicates agree with the plain rules ──────────────────────────


class TestRulesAgreeWithSql:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "eligible_types",
        [("All",), ("Vip",), ("NonCustomer",), ("New", "NonCustomer"), ("Regular", "Vip")],
    )
    @pytest.mark.parametrize("profile_type", [None, "NonCustomer", "New", "Vip"])
    async def test_customer_type_rule(self, test_db, seed, eligible_types, profile_type):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        offer = await seed.exclusive(merchant, [outlet], customer_types=eligible_types)
        if profile_type is not None:
            await seed.customer_type(USER_ID, merchant, profile_type)
        await rebuild_exclusive_index(test_db, offer.id)
        await rebuild_user_merchant_profiles_for_user(test_db, USER_ID)

        expected = match_customer_type_rule(eligible_types, profile_type) != CustomerTypeMatch.NONE
        assert (outlet.id in await _visible(test_db)) is expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tiers", [("NonCustomer",), ("New",), ("Regular", "Vip"), ("Vip",)])
    @pytest.mark.parametrize("profile_type", [None, "New", "Occasional", "Vip"])
    async def test_loyalty_tier_rule(self, test_db, seed, tiers, profile_type):
        merchant = await seed.merchant()
        outlet = await seed.outlet(merchant)
        await seed.loyalty(merchant, tiers=tiers)
        if profile_type is not None:
            await seed.customer_type(USER_ID, merchant, profile_type)
        await rebuild_loyalty_index_by_merchant(test_db, merchant.id)
        await rebuild_user_merchant_profiles_for_user(test_db, USER_ID)

        user_rank = customer_type_rank(profile_type)
        expected = any(is_tier_eligible(user_rank, customer_type_rank(tier)) for tier in tiers)
        assert (outlet.id in await _visible(test_db)) is expected


# ── Ordering & pagination ──────────────────────────────────────────────


class TestPagination:
    @pytest.fixture
    async def ranked_outlets(self, test_db, seed):
        """Seven outlets with tied and distinct sort keys plus a loyalty-only outlet."""
        merchant = await seed.merchant()
        loyalty_merchant = await seed.merchant(business_name="Points Place")
        layout = [("o-a", 500), ("o-b", 900), ("o-c", 500), ("o-d", 0), ("o-e", 300), ("o-f", 500)]
        for outlet_id, bps in layout:
            outlet = await seed.outlet(merchant, name=outlet_id, id=outlet_id)
            config = await seed.cashback(merchant, [outlet], tiers=(bps,))
            await rebuild_cashback_index(test_db, config.id)
        # o-e also has a better offer; the best one sets its key.
        extra = await seed.cashback(merchant, [await _outlet(test_db, "o-e")], tiers=(700,))
        await rebuild_cashback_index(test_db, extra.id)

        await seed.outlet(loyalty_merchant, name="o-g", id="o-g")
        await seed.loyalty(loyalty_merchant)
        await rebuild_loyalty_index_by_merchant(test_db, loyalty_merchant.id)

        return [("o-b", 900), ("o-e", 700), ("o-a", 500), ("o-c", 500), ("o-f", 500), ("o-d", 0), ("o-g", 0)]

    @pytest.mark.asyncio
    async def test_ordering(self, test_db, ranked_outlets):
        page = await resolve_eligible_outlets(test_db, USER_ID, take=50)
        assert [(i.outlet_id, i.sort_key) for i in page.items] == ranked_outlets
        assert page.has_next_page is False
        assert page.next_cursor is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("take", [1, 2, 3, 6, 7, 50])
    async def test_pages_cover_everything_once(self, test_db, ranked_outlets, take):
        seen = []
        cursor = None
        for _ in range(len(ranked_outlets) + 1):
            page = await resolve_eligible_outlets(test_db, USER_ID, cursor=cursor, take=take)
            assert len(page.items) <= take
            seen.extend((i.outlet_id, i.sort_key) for i in page.items)
            if not page.has_next_page:
                assert page.next_cursor is None
                break
            cursor = page.next_cursor
        assert seen == ranked_outlets

    @pytest.mark.asyncio
    async def test_invalid_cursor_restarts_from_first_page(self, test_db, ranked_outlets):
        page = await resolve_eligible_outlets(test_db, USER_ID, cursor="garbage", take=2)
        assert [i.outlet_id for i in page.items] == ["o-b", "o-e"]

    @pytest.mark.asyncio
    async def test_out_of_range_cursor_restarts_from_first_page(self, test_db, ranked_outlets):
        page = await resolve_eligible_outlets(test_db, USER_ID, cursor=encode_cursor(10**30, "o-a"), take=2)
        assert [i.outlet_id for i in page.items] == ["o-b", "o-e"]

    @pytest.mark.asyncio
    async def test_take_is_clamped(self, test_db, ranked_outlets):
        page = await resolve_eligible_outlets(test_db, USER_ID, take=0)
        assert len(page.items) == 1
        assert page.has_next_page is True


async def _outlet(db, outlet_id):
    from db.models import Outlet

    return await db.get(Outlet, outlet_id)


# ── Statement & boundary ───────────────────────────────────────────────


def test_statement_shape_is_independent_of_inputs(now):
    bare = build_eligible_outlets_query(USER_ID, OfferFilters(), None, 20, now)
    full = build_eligible_outlets_query(
        "someone-else",
        OfferFilters(search="pizza", category="Food", min_bps=100, max_bps=900),
        Cursor(sort_key=500, outlet_id="o-a"),
        5,
        now + timedelta(hours=1),
    )
    assert str(bare) == str(full)


def test_malformed_rows_are_structural_errors():
    assert _decode_row(SimpleNamespace(outlet_id="o-1", sort_key=5)).sort_key == 5
    with pytest.raises(OfferIndexRowError):
        _decode_row(SimpleNamespace(outlet_id=None, sort_key=5))
    with pytest.raises(OfferIndexRowError):
        _decode_row(SimpleNamespace(outlet_id="o-1", sort_key="5"))


@pytest.mark.asyncio
async def test_store_failure_surfaces_as_unavailable():
    class BrokenSession:
        async def execute(self, *args, **kwargs):
            raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    with pytest.raises(OfferIndexUnavailableError):
        await resolve_eligible_outlets(BrokenSession(), USER_ID)
