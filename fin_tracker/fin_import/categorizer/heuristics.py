"""Keyword and amount heuristics used when no rule matches."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from fin_tracker.shared.config import HeuristicSettings
from fin_tracker.shared.merchants import is_sentinel_category, normalize_merchant
from fin_tracker.shared.models import EXPENSE, ExpenseCategory


@dataclass(frozen=True, slots=True)
class KeywordGroup:
    category_name: str
    keywords: tuple[str, ...]
    confidence: float


# Order matters: the first group with any hit wins.
KEYWORD_TABLE: tuple[KeywordGroup, ...] = (
    KeywordGroup(
        "Food & Dining",
        (
            "UBER EATS", "DOORDASH", "GRUBHUB", "POSTMATES", "STARBUCKS", "MCDONALDS",
            "CHIPOTLE", "PANERA", "RESTAURANT", "CAFE", "COFFEE", "PIZZA", "BURGER",
            "FOOD", "DINING", "EATERY",
        ),
        0.85,
    ),
    KeywordGroup(
        "Transportation",
        (
            "UBER", "LYFT", "TAXI", "GAS", "SHELL", "EXXON", "MOBIL", "BP", "CHEVRON",
            "PARKING", "METRO", "SUBWAY", "BUS", "TRAIN", "AIRLINE", "DELTA", "UNITED",
            "AMERICAN",
        ),
        0.85,
    ),
    KeywordGroup(
        "Shopping",
        (
            "AMAZON", "TARGET", "WALMART", "COSTCO", "BEST BUY", "HOME DEPOT", "LOWES",
            "MACYS", "NORDSTROM", "SHOPPING", "RETAIL",
        ),
        0.85,
    ),
    KeywordGroup(
        "Bills & Utilities",
        (
            "ELECTRIC", "GAS BILL", "WATER", "INTERNET", "PHONE", "CELLULAR", "VERIZON",
            "AT&T", "T-MOBILE", "SPECTRUM", "COMCAST", "XFINITY", "UTILITY", "BILL",
        ),
        0.9,
    ),
    KeywordGroup(
        "Entertainment",
        (
            "NETFLIX", "SPOTIFY", "DISNEY", "HULU", "APPLE MUSIC", "MOVIE", "THEATER",
            "CINEMA", "CONCERT", "TICKET", "ENTERTAINMENT",
        ),
        0.8,
    ),
    KeywordGroup(
        "Healthcare",
        (
            "CVS", "WALGREENS", "PHARMACY", "DOCTOR", "HOSPITAL", "MEDICAL", "HEALTH",
            "DENTAL", "VISION", "INSURANCE",
        ),
        0.85,
    ),
    KeywordGroup(
        "Travel",
        ("HOTEL", "AIRBNB", "BOOKING", "EXPEDIA", "TRAVEL", "VACATION", "RESORT"),
        0.85,
    ),
    KeywordGroup(
        "Groceries",
        (
            "WHOLE FOODS", "TRADER JOES", "SAFEWAY", "KROGER", "ALBERTSONS", "GROCERY",
            "SUPERMARKET",
        ),
        0.9,
    ),
    KeywordGroup(
        "Subscription",
        ("SUBSCRIPTION", "MONTHLY", "ANNUAL", "MEMBERSHIP", "PREMIUM"),
        0.75,
    ),
)

SMALL_AMOUNT_CONFIDENCE = 0.6
LARGE_AMOUNT_CONFIDENCE = 0.7
PARTIAL_WORD_CONFIDENCE = 0.65

SHORT_KEYWORD_LENGTH = 3
MIN_MERCHANT_WORD_LENGTH = 4


@dataclass(slots=True)
class HeuristicMatch:
    """Heuristic outcome; ``category_id`` is None when a new category is proposed."""

    category_id: int | None
    category_name: str
    confidence: float
    reason: str

    @property
    def is_new_category(self) -> bool:
        return self.category_id is None


def _keyword_regex(keyword: str) -> re.Pattern[str]:
    escaped = re.escape(keyword)
    if len(keyword) <= SHORT_KEYWORD_LENGTH:
        # Short keywords such as BP or BUS must not fire inside longer words.
        return re.compile(rf"(?<![A-Z0-9]){escaped}(?![A-Z0-9])")
    return re.compile(escaped)


_COMPILED_TABLE: tuple[tuple[KeywordGroup, tuple[tuple[str, re.Pattern[str]], ...]], ...] = tuple(
    (group, tuple((keyword, _keyword_regex(keyword)) for keyword in group.keywords))
    for group in KEYWORD_TABLE
)


def _first_word(name: str) -> str:
    parts = name.lower().split()
    return parts[0] if parts else ""


class HeuristicClassifier:
    """Fallback classifier for expenses no rule could place."""

    def __init__(self, settings: HeuristicSettings) -> None:
        self.settings = settings

    def classify(
        self,
        merchant: str | None,
        description: str | None,
        amount: float,
        txn_type: str,
        categories: Sequence[ExpenseCategory],
    ) -> HeuristicMatch | None:
        if txn_type != EXPENSE:
            return None
        candidates = [cat for cat in categories if not is_sentinel_category(cat.name)]
        normalized_merchant = normalize_merchant(merchant or description)
        combined = f"{normalized_merchant} {normalize_merchant(description)}".strip()
        if not combined:
            return None

        keyword_match = self._match_keywords(combined, candidates)
        if keyword_match is not None:
            return keyword_match
        amount_match = self._match_amount(abs(amount), candidates)
        if amount_match is not None:
            return amount_match
        return self._match_partial_words(normalized_merchant, candidates)

    def _match_keywords(
        self, text: str, categories: Sequence[ExpenseCategory]
    ) -> HeuristicMatch | None:
        for group, keywords in _COMPILED_TABLE:
            for keyword, regex in keywords:
                if not regex.search(text):
                    continue
                existing = _find_equivalent_category(group.category_name, categories)
                if existing is not None:
                    return HeuristicMatch(
                        category_id=existing.id,
                        category_name=existing.name,
                        confidence=group.confidence,
                        reason=f"keyword:{keyword}",
                    )
                return HeuristicMatch(
                    category_id=None,
                    category_name=group.category_name,
                    confidence=group.confidence,
                    reason=f"keyword:{keyword}",
                )
        return None

    def _match_amount(
        self, amount: float, categories: Sequence[ExpenseCategory]
    ) -> HeuristicMatch | None:
        if amount <= 0:
            return None
        if amount < self.settings.small_amount_threshold:
            category = _find_by_fragments(categories, ("fee", "misc"))
            if category is not None:
                return HeuristicMatch(
                    category_id=category.id,
                    category_name=category.name,
                    confidence=SMALL_AMOUNT_CONFIDENCE,
                    reason="amount:small",
                )
        if amount > self.settings.large_amount_threshold:
            category = _find_by_fragments(categories, ("rent", "insurance", "mortgage"))
            if category is not None:
                return HeuristicMatch(
                    category_id=category.id,
                    category_name=category.name,
                    confidence=LARGE_AMOUNT_CONFIDENCE,
                    reason="amount:large",
                )
        return None

    def _match_partial_words(
        self, merchant: str, categories: Sequence[ExpenseCategory]
    ) -> HeuristicMatch | None:
        words = [word for word in merchant.split() if len(word) >= MIN_MERCHANT_WORD_LENGTH]
        for word in words:
            for category in categories:
                upper_name = category.name.upper()
                first = _first_word(category.name).upper()
                if word in upper_name or (len(first) > 2 and first in word):
                    return HeuristicMatch(
                        category_id=category.id,
                        category_name=category.name,
                        confidence=PARTIAL_WORD_CONFIDENCE,
                        reason=f"partial:{word}",
                    )
        return None


def _find_equivalent_category(
    name: str, categories: Sequence[ExpenseCategory]
) -> ExpenseCategory | None:
    lowered = name.lower()
    for category in categories:
        if category.name.lower() == lowered:
            return category
    target_first = _first_word(name)
    for category in categories:
        cat_lower = category.name.lower()
        cat_first = _first_word(category.name)
        if (target_first and target_first in cat_lower) or (len(cat_first) > 2 and cat_first in lowered):
            return category
    return None


def _find_by_fragments(
    categories: Sequence[ExpenseCategory], fragments: tuple[str, ...]
) -> ExpenseCategory | None:
    for category in categories:
        lowered = category.name.lower()
        if any(fragment in lowered for fragment in fragments):
            return category
    return None
