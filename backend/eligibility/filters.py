"""
Offer query inputs — filters, page size and keyset cursor handling.
"""

import base64
import re
from dataclasses import dataclass

from core.config import get_settings

DEFAULT_TAKE = 20
MAX_TAKE = 50

# Sort keys are bound as 32-bit INTEGER parameters.
MIN_SORT_KEY = -(2**31)
MAX_SORT_KEY = 2**31 - 1
MAX_BPS = 10_000

_SORT_KEY_RE = re.compile(r"-?\d{1,10}")


@dataclass(frozen=True)
class OfferFilters:
    search: str | None = None
    category: str | None = None
    min_bps: int | None = None
    max_bps: int | None = None

    @classmethod
    def build(
        cls,
        search: str | None = None,
        category: str | None = None,
        min_bps: int | None = None,
        max_bps: int | None = None,
    ) -> "OfferFilters":
        """Trim free-text inputs; blank strings mean "no filter"."""
        search = search.strip() if search else None
        category = category.strip() if category else None
        return cls(search=search or None, category=category or None, min_bps=min_bps, max_bps=max_bps)


@dataclass(frozen=True)
class Cursor:
    sort_key: int
    outlet_id: str


def normalize_take(take: int | None, default: int = DEFAULT_TAKE, maximum: int = MAX_TAKE) -> int:
    n = default if take is None else take
    return max(1, min(n, maximum))


def configured_take(take: int | None) -> int:
    """Clamp ``take`` to the page size bounds from settings."""
    settings = get_settings()
    return normalize_take(take, settings.offers_default_take, settings.offers_max_take)


def encode_cursor(sort_key: int, outlet_id: str) -> str:
    raw = f"{sort_key}:{outlet_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str | None) -> Cursor | None:
    """
    Decode an opaque page cursor.

    Anything that does not decode to ``<int32>:<outlet id>`` is treated as no
    cursor at all, so a stale or tampered cursor restarts from page one.
    """
    if not isinstance(cursor, str) or not cursor:
        return None
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
    except ValueError:
        return None
    sort_key, sep, outlet_id = raw.partition(":")
    if not sep or not outlet_id or not _SORT_KEY_RE.fullmatch(sort_key):
        return None
    value = int(sort_key)
    if not MIN_SORT_KEY <= value <= MAX_SORT_KEY:
        return None
    return Cursor(sort_key=value, outlet_id=outlet_id)


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so ``%`` and ``_`` match literally (used with ESCAPE '\\')."""
    return re.sub(r"([\\%_])", r"\\\1", text)
