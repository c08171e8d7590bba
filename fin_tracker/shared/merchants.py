"""Merchant normalization helpers shared across modules."""

from __future__ import annotations

import re

LONG_NUMBER_RE = re.compile(r"\d{6,}")
UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)

SENTINEL_CATEGORY_NAMES = frozenset({"uncategorized", "n/a"})


def normalize_merchant(merchant: str | None) -> str:
    """Return an uppercase, whitespace-collapsed merchant label."""

    if not merchant:
        return ""
    return " ".join(merchant.strip().upper().split())


def looks_like_identifier(pattern: str) -> bool:
    """Return True when a pattern embeds a transaction id rather than a merchant name."""

    return bool(LONG_NUMBER_RE.search(pattern) or UUID_RE.search(pattern))


def is_sentinel_category(name: str | None) -> bool:
    """Return True for the reserved placeholder category names."""

    if name is None:
        return False
    return name.strip().lower() in SENTINEL_CATEGORY_NAMES
