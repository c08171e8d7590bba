from __future__ import annotations

import sqlite3

import pytest

from fin_tracker.fin_import.categorizer.advisory import CategorySuggestion
from fin_tracker.fin_import.categorizer.rules import RuleStore
from fin_tracker.fin_import.pipeline import ImportOrchestrator, ImportState
from fin_tracker.shared import models
from fin_tracker.shared.config import AppConfig
from fin_tracker.shared.exceptions import EmptyImportError
from fin_tracker.shared.logging import Logger

HEADER = "Date,Name,Amount,Category\n"


def _csv(*rows: str) -> str:
    return HEADER + "".join(f"{row}\n" for row in rows)


@pytest.fixture()
def orchestrator(
    connection: sqlite3.Connection, app_config: AppConfig, logger: Logger, user_id: str
) -> ImportOrchestrator:
    return ImportOrchestrator(connection, user_id, config=app_config, logger=logger)


@pytest.fixture()
def store(connection: sqlite3.Connection, app_config: AppConfig) -> RuleStore:
    return RuleStore(connection, settings=app_config.categorization.rules)


def _count(connection: sqlite3.Connection, table: str) -> int:
    return connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_negative_payroll_row_becomes_unassigned_income(
    orchestrator: ImportOrchestrator, connection: sqlite3.Connection, user_id: str
) -> None:
    text = _csv("2024-01-05,ACME PAYROLL,-45.00,")

    preview = orchestrator.preview(text, 2024, 1)
    [candidate] = preview.candidates
    assert candidate.type == models.INCOME
    assert candidate.amount == 45.0
    assert candidate.income_source_id is None
    assert candidate.is_duplicate is False

    result = orchestrator.commit(preview.candidates)
    assert result.imported_count == 1
    [stored] = models.fetch_transactions(connection, user_id)
    assert stored.type == models.INCOME
    assert stored.amount == 45.0
    assert stored.income_source_id is None


def test_payroll_row_resolves_through_income_rule(
    orchestrator: ImportOrchestrator,
    store: RuleStore,
    connection: sqlite3.Connection,
    user_id: str,
) -> None:
    salary = models.get_or_create_income_source(connection, user_id, "Salary")
    store.create_rule(user_id, "ACME", applies_to=models.INCOME, income_source_id=salary.id)

    [candidate] = orchestrator.preview(_csv("2024-01-05,ACME PAYROLL,-45.00,"), 2024, 1).candidates

    assert candidate.income_source_id == salary.id
    assert candidate.method == "rule"
    assert candidate.rule_used == "ACME"


def test_in_batch_duplicate_is_flagged_and_skipped(
    orchestrator: ImportOrchestrator, connection: sqlite3.Connection, user_id: str
) -> None:
    text = _csv("2024-01-09,COFFEE HUT,4.50,", "2024-01-09,COFFEE HUT,4.50,")

    preview = orchestrator.preview(text, 2024, 1)
    assert [candidate.is_duplicate for candidate in preview.candidates] == [False, True]
    assert preview.duplicate_count == 1

    result = orchestrator.commit_text(text, 2024, 1)
    assert result.imported_count == 1
    assert result.skipped_duplicate_count == 1
    assert result.total_candidates == 2
    assert len(models.fetch_transactions(connection, user_id)) == 1


def test_rule_applies_and_learning_does_not_duplicate_rules(
    orchestrator: ImportOrchestrator,
    store: RuleStore,
    connection: sqlite3.Connection,
    user_id: str,
) -> None:
    dining = models.get_or_create_expense_category(connection, user_id, "Dining")
    store.create_rule(user_id, "UBER", category_id=dining.id)
    text = _csv("2024-01-09,UBER EATS #4522,21.32,", "2024-01-16,UBER EATS #4522,18.00,")

    result = orchestrator.commit_text(text, 2024, 1)

    assert result.imported_count == 2
    stored = models.fetch_transactions(connection, user_id)
    assert {txn.expense_category_id for txn in stored} == {dining.id}
    patterns = sorted(rule.pattern for rule in store.list_rules(user_id))
    assert patterns == ["UBER", "UBER EATS #4522"]


def test_preview_persists_nothing(
    orchestrator: ImportOrchestrator, connection: sqlite3.Connection
) -> None:
    text = _csv("2024-01-09,NETFLIX.COM,15.49,", "2024-01-10,ZXQ,3.00,Pets")

    preview = orchestrator.preview(text, 2024, 1)

    assert [candidate.category_name for candidate in preview.candidates] == ["Entertainment", "Pets"]
    assert orchestrator.state is ImportState.PREVIEWED
    for table in ("transactions", "categorization_rules", "expense_categories"):
        assert _count(connection, table) == 0


def test_committing_same_file_twice_is_idempotent(orchestrator: ImportOrchestrator) -> None:
    text = _csv(
        "2024-01-02,ZXQ ONE,10.00,",
        "2024-01-03,ZXQ TWO,11.00,",
        "2024-01-04,ACME PAYROLL,-900.00,",
    )

    first = orchestrator.commit_text(text, 2024, 1)
    second = orchestrator.commit_text(text, 2024, 1)

    assert first.imported_count == 3
    assert second.imported_count == 0
    assert second.skipped_duplicate_count == first.imported_count


def test_commit_creates_proposed_categories_and_learns(
    orchestrator: ImportOrchestrator,
    store: RuleStore,
    connection: sqlite3.Connection,
    user_id: str,
) -> None:
    result = orchestrator.commit_text(_csv("2024-01-09,NETFLIX.COM,15.49,"), 2024, 1)

    assert result.created_categories == ["Entertainment"]
    category = models.find_expense_category(connection, user_id, name="Entertainment")
    [txn] = models.fetch_transactions(connection, user_id)
    assert txn.expense_category_id == category.id
    [rule] = store.list_rules(user_id)
    assert rule.pattern == "NETFLIX.COM"
    assert rule.category_id == category.id
    assert orchestrator.state is ImportState.COMMITTED


def test_rules_learned_early_in_batch_apply_to_later_rows(
    orchestrator: ImportOrchestrator, connection: sqlite3.Connection, user_id: str
) -> None:
    text = _csv("2024-01-09,ZXQ SHOP,20.00,Pets", "2024-01-20,ZXQ SHOP,25.00,")

    orchestrator.commit_text(text, 2024, 1)

    pets = models.find_expense_category(connection, user_id, name="Pets")
    stored = models.fetch_transactions(connection, user_id)
    assert [txn.expense_category_id for txn in stored] == [pets.id, pets.id]


def test_edited_candidates_use_final_category(
    orchestrator: ImportOrchestrator,
    store: RuleStore,
    connection: sqlite3.Connection,
    user_id: str,
) -> None:
    preview = orchestrator.preview(_csv("2024-01-09,NETFLIX.COM,15.49,"), 2024, 1)
    preview.candidates[0].category_name = "Streaming"

    result = orchestrator.commit(preview.candidates)

    assert result.created_categories == ["Streaming"]
    streaming = models.find_expense_category(connection, user_id, name="Streaming")
    assert models.fetch_transactions(connection, user_id)[0].expense_category_id == streaming.id
    assert store.list_rules(user_id)[0].category_id == streaming.id
    assert models.find_expense_category(connection, user_id, name="Entertainment") is None


def test_placeholder_edit_is_a_row_error_not_an_abort(
    orchestrator: ImportOrchestrator, connection: sqlite3.Connection, user_id: str
) -> None:
    preview = orchestrator.preview(
        _csv("2024-01-09,ZXQ ONE,15.00,", "2024-01-10,ZXQ TWO,16.00,"), 2024, 1
    )
    preview.candidates[0].category_name = "Uncategorized"
    preview.candidates[1].category_id = 9999

    result = orchestrator.commit(preview.candidates)

    assert result.imported_count == 0
    assert [error.index for error in result.errors] == [0, 1]
    assert "placeholder" in result.errors[0].message
    assert _count(connection, "transactions") == 0
    assert models.find_expense_category(connection, user_id, name="Uncategorized") is None


def test_failed_row_does_not_block_the_rest(
    orchestrator: ImportOrchestrator, connection: sqlite3.Connection, user_id: str
) -> None:
    preview = orchestrator.preview(
        _csv("2024-01-09,ZXQ ONE,15.00,", "2024-01-10,ZXQ TWO,16.00,"), 2024, 1
    )
    preview.candidates[0].category_name = "N/A"

    result = orchestrator.commit(preview.candidates)

    assert result.imported_count == 1
    assert len(result.errors) == 1
    [stored] = models.fetch_transactions(connection, user_id)
    assert stored.merchant_name == "ZXQ TWO"


def test_tampered_fingerprint_is_recomputed(
    orchestrator: ImportOrchestrator, connection: sqlite3.Connection, user_id: str
) -> None:
    text = _csv("2024-01-09,ZXQ ONE,15.00,")
    orchestrator.commit_text(text, 2024, 1)
    preview = orchestrator.preview(text, 2024, 1)
    preview.candidates[0].fingerprint = "forged"

    result = orchestrator.commit(preview.candidates)

    assert result.skipped_duplicate_count == 1
    assert len(models.fetch_transactions(connection, user_id)) == 1


def test_empty_period_raises(orchestrator: ImportOrchestrator) -> None:
    text = _csv("2024-02-01,ZXQ,1.00,", "garbage,ZXQ,1.00,")
    with pytest.raises(EmptyImportError):
        orchestrator.preview(text, 2024, 1)
    with pytest.raises(EmptyImportError):
        orchestrator.commit([])


def test_preview_reports_dropped_rows(orchestrator: ImportOrchestrator) -> None:
    text = _csv("2024-01-01,ZXQ,1.00,", "2024-01-02,ZXQ,oops,")
    preview = orchestrator.preview(text, 2024, 1)
    assert preview.dropped_rows == [3]
    assert len(preview.candidates) == 1


def test_suggestions_attach_to_unresolved_expenses(
    connection: sqlite3.Connection, app_config: AppConfig, logger: Logger, user_id: str
) -> None:
    models.get_or_create_expense_category(connection, user_id, "Dining")
    seen: list[list[str]] = []

    def advisor(merchant, description, amount, categories):
        seen.append(list(categories))
        return CategorySuggestion("Dining", 0.75, "looks like food")

    orchestrator = ImportOrchestrator(
        connection, user_id, config=app_config, logger=logger, advisor=advisor
    )
    preview = orchestrator.preview(
        _csv("2024-01-09,ZXQ BISTRO,30.00,", "2024-01-10,ACME PAYROLL,-10.00,"),
        2024,
        1,
        suggest=True,
    )

    assert preview.candidates[0].suggestion == CategorySuggestion("Dining", 0.75, "looks like food")
    assert preview.candidates[0].category_id is None
    assert preview.candidates[1].suggestion is None
    assert seen == [["Dining"]]


def test_failing_advisor_falls_back_silently(
    connection: sqlite3.Connection, app_config: AppConfig, logger: Logger, user_id: str
) -> None:
    def advisor(*_args):
        raise ConnectionError("offline")

    orchestrator = ImportOrchestrator(
        connection, user_id, config=app_config, logger=logger, advisor=advisor
    )
    preview = orchestrator.preview(_csv("2024-01-09,ZXQ BISTRO,30.00,"), 2024, 1, suggest=True)

    assert preview.candidates[0].suggestion is None


def test_renamed_category_overrides_rule_category_id(
    orchestrator: ImportOrchestrator,
    store: RuleStore,
    connection: sqlite3.Connection,
    user_id: str,
) -> None:
    dining = models.get_or_create_expense_category(connection, user_id, "Dining")
    store.create_rule(user_id, "UBER", category_id=dining.id)
    preview = orchestrator.preview(_csv("2024-01-09,UBER TRIP,12.00,"), 2024, 1)
    [candidate] = preview.candidates
    assert candidate.category_id == dining.id
    candidate.category_name = "Travel"

    result = orchestrator.commit([candidate])

    travel = models.find_expense_category(connection, user_id, name="Travel")
    assert result.created_categories == ["Travel"]
    assert models.fetch_transactions(connection, user_id)[0].expense_category_id == travel.id
    learned = store.find_contains_rule(user_id, "UBER TRIP")
    assert learned.category_id == travel.id


def test_category_name_case_change_keeps_category_id(
    orchestrator: ImportOrchestrator,
    store: RuleStore,
    connection: sqlite3.Connection,
    user_id: str,
) -> None:
    dining = models.get_or_create_expense_category(connection, user_id, "Dining")
    store.create_rule(user_id, "UBER", category_id=dining.id)
    preview = orchestrator.preview(_csv("2024-01-09,UBER TRIP,12.00,"), 2024, 1)
    preview.candidates[0].category_name = " dining "

    result = orchestrator.commit(preview.candidates)

    assert result.created_categories == []
    assert models.fetch_transactions(connection, user_id)[0].expense_category_id == dining.id


def test_renamed_income_source_overrides_id(
    orchestrator: ImportOrchestrator,
    store: RuleStore,
    connection: sqlite3.Connection,
    user_id: str,
) -> None:
    salary = models.get_or_create_income_source(connection, user_id, "Salary")
    store.create_rule(user_id, "ACME", applies_to=models.INCOME, income_source_id=salary.id)
    preview = orchestrator.preview(_csv("2024-01-15,ACME PAYROLL,-2500.00,"), 2024, 1)
    preview.candidates[0].income_source_name = "Bonus"

    orchestrator.commit(preview.candidates)

    bonus = models.find_income_source(connection, user_id, name="Bonus")
    assert models.fetch_transactions(connection, user_id)[0].income_source_id == bonus.id


def test_candidate_to_transaction_uses_recomputed_fingerprint(
    orchestrator: ImportOrchestrator, user_id: str
) -> None:
    preview = orchestrator.preview(_csv("2024-01-09,ZXQ ONE,15.00,Pets"), 2024, 1)
    [candidate] = preview.candidates
    expected = candidate.fingerprint
    candidate.fingerprint = "forged"

    txn = candidate.to_transaction(user_id, category_id=7, income_source_id=None)

    assert txn.fingerprint == expected
    assert txn.expense_category_id == 7
    assert txn.csv_category == "Pets"
    assert txn.merchant_name == "ZXQ ONE"
