"""Rule storage, validation and matching."""

from __future__ import annotations

import functools
import re
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, replace

from fin_tracker.shared import models
from fin_tracker.shared.config import RuleSettings
from fin_tracker.shared.database import atomic
from fin_tracker.shared.exceptions import CategorizationError, RuleRejection, RuleValidationError
from fin_tracker.shared.merchants import is_sentinel_category, looks_like_identifier, normalize_merchant
from fin_tracker.shared.models import CategorizationRule

BRACE_QUANTIFIER_RE = re.compile(r"\{(\d*)(,?)(\d*)\}")
BACKREFERENCE_RE = re.compile(r"\\[1-9]|\(\?P=")

_UNSET = object()


@functools.lru_cache(maxsize=512)
def compile_rule_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def rule_matches(
    rule: CategorizationRule,
    text: str,
    *,
    max_match_text_length: int = 256,
) -> bool:
    """Return True when the rule's pattern matches the merchant text."""

    normalized = normalize_merchant(text)
    if not normalized:
        return False
    if rule.match_type == models.MATCH_EXACT:
        return normalized == normalize_merchant(rule.pattern)
    if rule.match_type == models.MATCH_CONTAINS:
        pattern = normalize_merchant(rule.pattern)
        return bool(pattern) and pattern in normalized
    if rule.match_type == models.MATCH_REGEX:
        # Rows written before validation existed never reach the regex engine unchecked.
        if find_unsafe_repetition(rule.pattern) or BACKREFERENCE_RE.search(rule.pattern):
            return False
        try:
            compiled = compile_rule_pattern(rule.pattern)
        except re.error:
            return False
        return compiled.search(normalized[:max_match_text_length]) is not None
    return False


@dataclass(slots=True)
class _GroupScan:
    quantified: bool = False
    alternation: bool = False


def _repeat_length(pattern: str, index: int) -> int:
    """Length of a repeating quantifier starting at ``index``, or 0.

    ``?``, ``{0,1}`` and ``{1}`` are not repeats.
    """
    if index >= len(pattern):
        return 0
    if pattern[index] in "*+":
        return 1
    if pattern[index] == "{":
        brace = BRACE_QUANTIFIER_RE.match(pattern, index)
        if brace is None or not (brace.group(1) or brace.group(3)):
            return 0
        low, comma, high = brace.groups()
        upper = high if comma else low
        if comma and not upper:
            return brace.end() - index
        if int(upper) > 1:
            return brace.end() - index
    return 0


@functools.lru_cache(maxsize=512)
def find_unsafe_repetition(pattern: str) -> str | None:
    """Describe a repeated group that can backtrack exponentially, or return None.

    A group repeated with ``*``, ``+`` or a multi-count brace must not itself
    hold a quantifier, e.g. ``(a+)+``, or an alternation, e.g. ``(A|AA)*``.
    """
    stack: list[_GroupScan] = []
    index = 0
    in_class = False
    while index < len(pattern):
        char = pattern[index]
        if char == "\\":
            index += 2
            continue
        if in_class:
            if char == "]":
                in_class = False
            index += 1
            continue
        if char == "[":
            in_class = True
            index += 1
            if pattern.startswith("^", index):
                index += 1
            if pattern.startswith("]", index):
                index += 1
            continue
        if char == "(":
            stack.append(_GroupScan())
        elif char == ")" and stack:
            group = stack.pop()
            repeated = _repeat_length(pattern, index + 1) > 0
            if repeated and group.quantified:
                return "nested quantifiers"
            if repeated and group.alternation:
                return "a repeated alternation"
            if stack:
                stack[-1].quantified |= group.quantified or repeated
                stack[-1].alternation |= group.alternation
        elif char == "|" and stack:
            stack[-1].alternation = True
        elif stack:
            if _repeat_length(pattern, index) or (char == "?" and pattern[index - 1] not in "(*+?}"):
                stack[-1].quantified = True
        index += 1
    return None


def check_regex_safety(pattern: str, settings: RuleSettings) -> None:
    if len(pattern) > settings.max_regex_length:
        raise RuleValidationError(
            RuleRejection.UNSAFE_REGEX,
            f"Regex pattern is longer than {settings.max_regex_length} characters.",
        )
    problem = find_unsafe_repetition(pattern)
    if problem:
        raise RuleValidationError(
            RuleRejection.UNSAFE_REGEX,
            f"Regex pattern contains {problem}.",
        )
    if BACKREFERENCE_RE.search(pattern):
        raise RuleValidationError(
            RuleRejection.UNSAFE_REGEX,
            "Regex pattern contains back-references.",
        )
    try:
        compile_rule_pattern(pattern)
    except re.error as exc:
        raise RuleValidationError(
            RuleRejection.INVALID_REGEX,
            f"Invalid regex pattern: {exc}",
        ) from exc


def validate_rule(
    connection: sqlite3.Connection,
    rule: CategorizationRule,
    settings: RuleSettings,
) -> CategorizationRule:
    """Validate a rule and return a copy with its pattern in stored form.

    Raises RuleValidationError carrying the rejection reason.
    """
    pattern = (rule.pattern or "").strip()
    if not pattern:
        raise RuleValidationError(RuleRejection.EMPTY_PATTERN, "Rule pattern cannot be empty.")
    if rule.match_type not in models.MATCH_TYPES:
        raise RuleValidationError(
            RuleRejection.INVALID_MATCH_TYPE,
            f"match_type must be one of {', '.join(models.MATCH_TYPES)}; got '{rule.match_type}'.",
        )
    if rule.applies_to not in models.APPLIES_TO_VALUES:
        raise RuleValidationError(
            RuleRejection.INVALID_APPLIES_TO,
            f"applies_to must be one of {', '.join(models.APPLIES_TO_VALUES)}; got '{rule.applies_to}'.",
        )
    if rule.match_type != models.MATCH_REGEX:
        pattern = normalize_merchant(pattern)
    if looks_like_identifier(pattern):
        raise RuleValidationError(
            RuleRejection.IDENTIFIER_PATTERN,
            f"Pattern '{pattern}' looks like a transaction id (long number or UUID).",
        )
    if rule.match_type == models.MATCH_REGEX:
        check_regex_safety(pattern, settings)

    _validate_targets(connection, rule)
    return replace(rule, pattern=pattern)


def _validate_targets(connection: sqlite3.Connection, rule: CategorizationRule) -> None:
    if rule.category_id is None and rule.income_source_id is None:
        raise RuleValidationError(
            RuleRejection.MISSING_TARGET,
            "Rule needs a category or an income source.",
        )
    if rule.applies_to == models.EXPENSE:
        if rule.income_source_id is not None:
            raise RuleValidationError(
                RuleRejection.TARGET_MISMATCH,
                "Expense rules cannot target an income source.",
            )
        if rule.category_id is None:
            raise RuleValidationError(RuleRejection.MISSING_TARGET, "Expense rules need a category.")
    if rule.applies_to == models.INCOME:
        if rule.category_id is not None:
            raise RuleValidationError(
                RuleRejection.TARGET_MISMATCH,
                "Income rules cannot target an expense category.",
            )
        if rule.income_source_id is None:
            raise RuleValidationError(
                RuleRejection.MISSING_TARGET, "Income rules need an income source."
            )

    if rule.category_id is not None:
        category = models.find_expense_category(
            connection, rule.user_id, category_id=rule.category_id
        )
        if category is None:
            raise RuleValidationError(
                RuleRejection.UNKNOWN_TARGET,
                f"Category id {rule.category_id} does not exist.",
            )
        if is_sentinel_category(category.name):
            raise RuleValidationError(
                RuleRejection.SENTINEL_TARGET,
                f"Rules cannot target the placeholder category '{category.name}'.",
            )
    if rule.income_source_id is not None:
        source = models.find_income_source(
            connection, rule.user_id, source_id=rule.income_source_id
        )
        if source is None:
            raise RuleValidationError(
                RuleRejection.UNKNOWN_TARGET,
                f"Income source id {rule.income_source_id} does not exist.",
            )


@dataclass(slots=True)
class RuleMatch:
    rule: CategorizationRule
    category_id: int | None = None
    category_name: str | None = None
    income_source_id: int | None = None
    income_source_name: str | None = None


class RuleMatcher:
    """Read-only matcher evaluating a user's rules in precedence order.

    Rules are re-read on every call so rows later in a batch see rules learned
    from earlier rows.
    """

    def __init__(self, connection: sqlite3.Connection, *, settings: RuleSettings) -> None:
        self.connection = connection
        self.settings = settings

    def match(self, user_id: str, merchant: str | None, txn_type: str) -> RuleMatch | None:
        text = normalize_merchant(merchant)
        if not text:
            return None
        for rule in models.fetch_rules(self.connection, user_id, txn_type=txn_type):
            if not rule_matches(rule, text, max_match_text_length=self.settings.max_match_text_length):
                continue
            resolved = self._resolve_target(rule, txn_type)
            if resolved is not None:
                return resolved
        return None

    def _resolve_target(self, rule: CategorizationRule, txn_type: str) -> RuleMatch | None:
        target_id = rule.target_for(txn_type)
        if target_id is None:
            return None
        if txn_type == models.EXPENSE:
            category = models.find_expense_category(
                self.connection, rule.user_id, category_id=target_id
            )
            if category is None or is_sentinel_category(category.name):
                return None
            return RuleMatch(rule=rule, category_id=category.id, category_name=category.name)
        source = models.find_income_source(self.connection, rule.user_id, source_id=target_id)
        if source is None:
            return None
        return RuleMatch(rule=rule, income_source_id=source.id, income_source_name=source.name)


class RuleStore:
    """CRUD access to categorization rules with validation on every write."""

    def __init__(self, connection: sqlite3.Connection, *, settings: RuleSettings) -> None:
        self.connection = connection
        self.settings = settings

    def list_rules(self, user_id: str, *, txn_type: str | None = None) -> list[CategorizationRule]:
        return models.fetch_rules(self.connection, user_id, txn_type=txn_type)

    def get_rule(self, user_id: str, rule_id: int) -> CategorizationRule:
        rule = models.fetch_rule(self.connection, user_id, rule_id)
        if rule is None:
            raise CategorizationError(f"Rule id {rule_id} not found.")
        return rule

    def find_contains_rule(self, user_id: str, pattern: str) -> CategorizationRule | None:
        normalized = normalize_merchant(pattern)
        if not normalized:
            return None
        return models.find_rule_by_pattern(
            self.connection, user_id, normalized, models.MATCH_CONTAINS
        )

    def create_rule(
        self,
        user_id: str,
        pattern: str,
        *,
        match_type: str = models.MATCH_CONTAINS,
        applies_to: str = models.EXPENSE,
        category_id: int | None = None,
        income_source_id: int | None = None,
    ) -> CategorizationRule:
        rule = validate_rule(
            self.connection,
            CategorizationRule(
                user_id=user_id,
                pattern=pattern,
                match_type=match_type,
                applies_to=applies_to,
                category_id=category_id,
                income_source_id=income_source_id,
            ),
            self.settings,
        )
        models.insert_rule(self.connection, rule)
        return rule

    def update_rule(
        self,
        user_id: str,
        rule_id: int,
        *,
        pattern: str | None = None,
        match_type: str | None = None,
        applies_to: str | None = None,
        category_id: int | None | object = _UNSET,
        income_source_id: int | None | object = _UNSET,
    ) -> CategorizationRule:
        """Apply a partial update; omitted fields keep their stored values."""

        current = self.get_rule(user_id, rule_id)
        candidate = replace(
            current,
            pattern=pattern if pattern is not None else current.pattern,
            match_type=match_type if match_type is not None else current.match_type,
            applies_to=applies_to if applies_to is not None else current.applies_to,
            category_id=current.category_id if category_id is _UNSET else category_id,
            income_source_id=(
                current.income_source_id if income_source_id is _UNSET else income_source_id
            ),
        )
        rule = validate_rule(self.connection, candidate, self.settings)
        models.update_rule(self.connection, rule)
        return rule

    def delete_rule(self, user_id: str, rule_id: int) -> bool:
        return models.delete_rule(self.connection, user_id, rule_id)

    def replace_rules(self, user_id: str, rules: Iterable[CategorizationRule]) -> list[CategorizationRule]:
        """Atomically swap the user's rule set for ``rules``.

        Every rule is validated before anything is deleted; a failure during
        the swap leaves the previous set intact.
        """
        validated = [
            validate_rule(self.connection, replace(rule, user_id=user_id, id=None), self.settings)
            for rule in rules
        ]
        with atomic(self.connection):
            models.delete_rules_for_user(self.connection, user_id)
            for rule in validated:
                models.insert_rule(self.connection, rule)
        return validated
