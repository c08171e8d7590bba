"""Resolve a transaction to a category or income source."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Protocol

from fin_tracker.shared import models
from fin_tracker.shared.config import CategorizationSettings
from fin_tracker.shared.logging import Logger
from fin_tracker.shared.merchants import is_sentinel_category

from .heuristics import HeuristicClassifier
from .rules import RuleMatcher

RULE_CONFIDENCE = 1.0
CSV_CATEGORY_CONFIDENCE = 0.9

METHOD_RULE = "rule"
METHOD_CSV_CATEGORY = "csv_category"
METHOD_HEURISTIC = "heuristic"


class Categorizable(Protocol):
    type: str
    amount: float
    description: str
    merchant_name: str | None
    csv_category: str | None


@dataclass(slots=True)
class Resolution:
    """Outcome of resolving one transaction.

    A ``category_name`` without a ``category_id`` is a proposed category that
    only gets created on commit.
    """

    category_id: int | None = None
    category_name: str | None = None
    income_source_id: int | None = None
    income_source_name: str | None = None
    method: str | None = None
    rule_used: str | None = None
    confidence: float = 0.0

    @property
    def resolved(self) -> bool:
        return bool(self.category_id or self.category_name or self.income_source_id)

    @property
    def is_new_category(self) -> bool:
        return self.category_id is None and bool(self.category_name)


class CategoryResolver:
    """Rule matcher first, then the raw category hint, then heuristics."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        user_id: str,
        *,
        settings: CategorizationSettings,
        logger: Logger | None = None,
    ) -> None:
        self.connection = connection
        self.user_id = user_id
        self.settings = settings
        self.logger = logger
        self.matcher = RuleMatcher(connection, settings=settings.rules)
        self.heuristics = HeuristicClassifier(settings.heuristics)

    def resolve(self, record: Categorizable) -> Resolution:
        merchant = record.merchant_name or record.description
        match = self.matcher.match(self.user_id, merchant, record.type)
        if match is not None:
            return Resolution(
                category_id=match.category_id,
                category_name=match.category_name,
                income_source_id=match.income_source_id,
                income_source_name=match.income_source_name,
                method=METHOD_RULE,
                rule_used=match.rule.pattern,
                confidence=RULE_CONFIDENCE,
            )

        if record.type != models.EXPENSE:
            return Resolution()

        hint = self._from_csv_category(record.csv_category)
        if hint is not None:
            return hint

        if not self.settings.heuristics.enabled:
            return Resolution()
        categories = models.fetch_expense_categories(self.connection, self.user_id)
        heuristic = self.heuristics.classify(
            record.merchant_name,
            record.description,
            record.amount,
            record.type,
            categories,
        )
        if heuristic is None:
            return Resolution()
        if self.logger:
            self.logger.debug(
                f"Heuristic match for '{merchant}': {heuristic.category_name} ({heuristic.reason})"
            )
        return Resolution(
            category_id=heuristic.category_id,
            category_name=heuristic.category_name,
            method=METHOD_HEURISTIC,
            confidence=heuristic.confidence,
        )

    def _from_csv_category(self, raw_category: str | None) -> Resolution | None:
        label = " ".join((raw_category or "").split())
        if not label or is_sentinel_category(label):
            return None
        existing = models.find_expense_category(self.connection, self.user_id, name=label)
        if existing is not None:
            return Resolution(
                category_id=existing.id,
                category_name=existing.name,
                method=METHOD_CSV_CATEGORY,
                confidence=CSV_CATEGORY_CONFIDENCE,
            )
        return Resolution(
            category_name=label,
            method=METHOD_CSV_CATEGORY,
            confidence=CSV_CATEGORY_CONFIDENCE,
        )
