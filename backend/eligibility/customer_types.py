"""
Customer type hierarchy, lowest to highest.

Loyalty tiers are unlocked by rank: a customer can access every tier at or
below their own rank.
"""

ALL = "All"
NON_CUSTOMER = "NonCustomer"

ORDERED_CUSTOMER_TYPES: dict[str, int] = {
    NON_CUSTOMER: 0,
    "New": 1,
    "Infrequent": 2,
    "Occasional": 3,
    "Regular": 4,
    "Vip": 5,
}


def customer_type_rank(customer_type: str | None) -> int:
    """Rank for a customer type string. Unknown or missing types rank as NonCustomer."""
    if not customer_type:
        return ORDERED_CUSTOMER_TYPES[NON_CUSTOMER]
    return ORDERED_CUSTOMER_TYPES.get(customer_type, ORDERED_CUSTOMER_TYPES[NON_CUSTOMER])


def is_tier_eligible(user_rank: int, tier_min_rank: int) -> bool:
    return user_rank >= tier_min_rank
