from __future__ import annotations

import sqlite3
from dataclasses import dataclass, replace

import pytest

from fin_tracker.fin_import.categorizer.resolver import (
    CSV_CATEGORY_CONFIDENCE,
    RULE_CONFIDENCE,
    CategoryResolver,
)
from fin_tracker.fin_import.categorizer.rules import RuleStore
from fin_tracker.shared import models
from fin_tracker.shared.config import AppConfig


@dataclass
class Row:
    type: str
    amount: float
    description: str
    merchant_name: str | None = None
    csv_category: str | None = None


@pytest.fixture()
def resolver(connection: sqlite3.Connection, app_config: AppConfig, user_id: str) -> CategoryResolver:
    return CategoryResolver(connection, user_id, settings=app_config.categorization)


def test_rule_takes_precedence_over_hint_and_heuristics(
    resolver: CategoryResolver,
    connection: sqlite3.Connection,
    app_config: AppConfig,
    user_id: str,
) -> None:
    groceries = models.get_or_create_expense_category(connection, user_id, "Groceries")
    RuleStore(connection, settings=app_config.categorization.rules).create_rule(
        user_id, "UBER EATS", category_id=groceries.id
    )

    resolution = resolver.resolve(
        Row(models.EXPENSE, 21.32, "UBER EATS #4522", "UBER EATS #4522", csv_category="Food")
    )

    assert resolution.category_id == groceries.id
    assert resolution.method == "rule"
    assert resolution.rule_used == "UBER EATS"
    assert resolution.confidence == RULE_CONFIDENCE


def test_csv_hint_reuses_existing_category(
    resolver: CategoryResolver, connection: sqlite3.Connection, user_id: str
) -> None:
    dining = models.get_or_create_expense_category(connection, user_id, "Food & Drink")

    resolution = resolver.resolve(
        Row(models.EXPENSE, 12.0, "ZXQ BISTRO", csv_category=" food &  drink ")
    )

    assert resolution.category_id == dining.id
    assert resolution.method == "csv_category"
    assert resolution.confidence == CSV_CATEGORY_CONFIDENCE


def test_csv_hint_proposes_new_category(resolver: CategoryResolver) -> None:
    resolution = resolver.resolve(Row(models.EXPENSE, 12.0, "ZXQ", csv_category="Pets"))

    assert resolution.category_id is None
    assert resolution.category_name == "Pets"
    assert resolution.is_new_category


def test_placeholder_hint_falls_through_to_heuristics(resolver: CategoryResolver) -> None:
    resolution = resolver.resolve(
        Row(models.EXPENSE, 15.0, "NETFLIX.COM", csv_category="Uncategorized")
    )

    assert resolution.method == "heuristic"
    assert resolution.category_name == "Entertainment"


def test_unresolved_expense_stays_unassigned(resolver: CategoryResolver) -> None:
    resolution = resolver.resolve(Row(models.EXPENSE, 42.0, "ZXQ"))

    assert resolution.resolved is False
    assert resolution.method is None


def test_income_without_rule_is_unassigned(resolver: CategoryResolver) -> None:
    resolution = resolver.resolve(
        Row(models.INCOME, 45.0, "ACME PAYROLL", "ACME PAYROLL", csv_category="Paycheck")
    )
    assert resolution.resolved is False


def test_heuristics_can_be_disabled(
    connection: sqlite3.Connection, app_config: AppConfig, user_id: str
) -> None:
    settings = replace(
        app_config.categorization,
        heuristics=replace(app_config.categorization.heuristics, enabled=False),
    )
    resolver = CategoryResolver(connection, user_id, settings=settings)

    assert resolver.resolve(Row(models.EXPENSE, 15.0, "NETFLIX.COM")).resolved is False
