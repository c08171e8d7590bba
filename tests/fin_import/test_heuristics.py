from __future__ import annotations

import pytest

from fin_tracker.fin_import.categorizer.heuristics import HeuristicClassifier
from fin_tracker.shared.config import HeuristicSettings
from fin_tracker.shared.models import EXPENSE, INCOME, ExpenseCategory


@pytest.fixture()
def classifier() -> HeuristicClassifier:
    return HeuristicClassifier(
        HeuristicSettings(enabled=True, small_amount_threshold=5.0, large_amount_threshold=1000.0)
    )


def _categories(*names: str) -> list[ExpenseCategory]:
    return [ExpenseCategory(id=idx, user_id="u", name=name) for idx, name in enumerate(names, start=1)]


def test_keyword_proposes_table_category(classifier: HeuristicClassifier) -> None:
    match = classifier.classify("NETFLIX.COM", "NETFLIX.COM", 15.49, EXPENSE, [])

    assert match is not None
    assert match.category_name == "Entertainment"
    assert match.is_new_category
    assert match.confidence == pytest.approx(0.8)


def test_keyword_reuses_equivalent_existing_category(classifier: HeuristicClassifier) -> None:
    match = classifier.classify("STARBUCKS #12", "", 6.10, EXPENSE, _categories("Dining", "Rent"))

    assert match is not None
    assert match.category_id == 1
    assert match.category_name == "Dining"
    assert match.is_new_category is False


def test_first_table_entry_wins(classifier: HeuristicClassifier) -> None:
    match = classifier.classify("UBER EATS #4522", "", 21.32, EXPENSE, [])
    assert match.category_name == "Food & Dining"


def test_short_keywords_need_word_boundaries(classifier: HeuristicClassifier) -> None:
    assert classifier.classify("HUBPOINT CO", "", 20.0, EXPENSE, []) is None

    match = classifier.classify("BP 8821 STATION", "", 40.0, EXPENSE, [])
    assert match.category_name == "Transportation"
    assert match.reason == "keyword:BP"


def test_small_amount_prefers_fee_category(classifier: HeuristicClassifier) -> None:
    match = classifier.classify("ZXQ VENDOR", "", 2.5, EXPENSE, _categories("Bank Fees"))

    assert match.category_name == "Bank Fees"
    assert match.confidence == pytest.approx(0.6)


def test_large_amount_prefers_housing_category(classifier: HeuristicClassifier) -> None:
    match = classifier.classify("ZXQ PROPERTY MGMT", "", 1850.0, EXPENSE, _categories("Rent"))

    assert match.category_name == "Rent"
    assert match.confidence == pytest.approx(0.7)


def test_amount_heuristics_need_an_existing_category(classifier: HeuristicClassifier) -> None:
    assert classifier.classify("ZXQ VENDOR", "", 2.5, EXPENSE, []) is None


def test_partial_word_match(classifier: HeuristicClassifier) -> None:
    match = classifier.classify("PETSMART STORE", "", 30.0, EXPENSE, _categories("Pets"))

    assert match.category_name == "Pets"
    assert match.reason == "partial:PETSMART"


def test_placeholder_categories_are_never_returned(classifier: HeuristicClassifier) -> None:
    assert classifier.classify("ZXQ VENDOR", "", 2.5, EXPENSE, _categories("Uncategorized")) is None
    assert classifier.classify("ZXQ UNCATEGORIZED", "", 20.0, EXPENSE, _categories("N/A", "Uncategorized")) is None


def test_income_is_not_classified(classifier: HeuristicClassifier) -> None:
    assert classifier.classify("NETFLIX", "", 15.0, INCOME, []) is None


def test_no_signal_returns_none(classifier: HeuristicClassifier) -> None:
    assert classifier.classify("ZXQ", "", 42.0, EXPENSE, _categories("Dining")) is None
