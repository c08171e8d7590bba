"""Learn merchant rules from confirmed assignments."""

from __future__ import annotations

from dataclasses import dataclass

from fin_tracker.shared import models
from fin_tracker.shared.exceptions import RuleValidationError
from fin_tracker.shared.logging import Logger
from fin_tracker.shared.merchants import is_sentinel_category, normalize_merchant
from fin_tracker.shared.models import CategorizationRule

from .rules import RuleStore


@dataclass(slots=True)
class LearnResult:
    rule: CategorizationRule
    created: bool


def learn_rule(
    store: RuleStore,
    user_id: str,
    merchant_name: str | None,
    *,
    category_id: int | None = None,
    income_source_id: int | None = None,
    logger: Logger | None = None,
) -> LearnResult | None:
    """Upsert a ``contains`` rule mapping the merchant to the given target.

    Calling this repeatedly with the same input leaves a single rule behind.
    Returns None when nothing was learned.
    """
    pattern = normalize_merchant(merchant_name)
    if not pattern:
        return None
    if category_id is None and income_source_id is None:
        return None
    if category_id is not None:
        category = models.find_expense_category(store.connection, user_id, category_id=category_id)
        if category is None or is_sentinel_category(category.name):
            return None
        applies_to = models.EXPENSE
        income_source_id = None
    else:
        applies_to = models.INCOME

    existing = store.find_contains_rule(user_id, pattern)
    try:
        if existing is not None and existing.id is not None:
            rule = store.update_rule(
                user_id,
                existing.id,
                applies_to=applies_to,
                category_id=category_id,
                income_source_id=income_source_id,
            )
            return LearnResult(rule=rule, created=False)
        rule = store.create_rule(
            user_id,
            pattern,
            match_type=models.MATCH_CONTAINS,
            applies_to=applies_to,
            category_id=category_id,
            income_source_id=income_source_id,
        )
    except RuleValidationError as exc:
        if logger:
            logger.debug(f"Skipped learning rule for '{pattern}' ({exc.reason.value}): {exc}")
        return None
    return LearnResult(rule=rule, created=True)
