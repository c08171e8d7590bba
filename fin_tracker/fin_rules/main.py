"""fin-rules CLI: manage categorization rules.

Writes happen immediately; pass --dry-run to validate without saving.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import click
import yaml

from fin_tracker.fin_import.categorizer.advisory import build_advisor, request_suggestion
from fin_tracker.fin_import.categorizer.learner import learn_rule
from fin_tracker.fin_import.categorizer.rules import RuleStore, validate_rule
from fin_tracker.shared import models, paths
from fin_tracker.shared.cli import (
    CLIContext,
    common_cli_options,
    handle_cli_errors,
    pass_cli_context,
)
from fin_tracker.shared.database import connect
from fin_tracker.shared.exceptions import RuleRejection, RuleValidationError
from fin_tracker.shared.merchants import is_sentinel_category
from fin_tracker.shared.models import CategorizationRule
from fin_tracker.shared.render import OUTPUT_FORMATS, render_rows

RULE_COLUMNS = ("id", "pattern", "match_type", "applies_to", "category", "income_source")
RULES_FILE_VERSION = 1


def _resolve_category_id(
    connection: sqlite3.Connection,
    user_id: str,
    *,
    name: str | None,
    category_id: int | None,
    create: bool,
) -> int | None:
    if category_id is not None:
        return category_id
    if not name:
        return None
    if is_sentinel_category(name):
        raise RuleValidationError(
            RuleRejection.SENTINEL_TARGET,
            f"Rules cannot target the placeholder category '{name}'.",
        )
    existing = models.find_expense_category(connection, user_id, name=name)
    if existing is not None:
        return existing.id
    if not create:
        raise click.ClickException(f"Category '{name}' does not exist.")
    return models.create_expense_category(connection, user_id, name).id


def _resolve_income_source_id(
    connection: sqlite3.Connection,
    user_id: str,
    *,
    name: str | None,
    source_id: int | None,
    create: bool,
) -> int | None:
    if source_id is not None:
        return source_id
    if not name:
        return None
    existing = models.find_income_source(connection, user_id, name=name)
    if existing is not None:
        return existing.id
    if not create:
        raise click.ClickException(f"Income source '{name}' does not exist.")
    return models.get_or_create_income_source(connection, user_id, name).id


def _rule_to_row(connection: sqlite3.Connection, rule: CategorizationRule) -> dict[str, Any]:
    category = (
        models.find_expense_category(connection, rule.user_id, category_id=rule.category_id)
        if rule.category_id is not None
        else None
    )
    source = (
        models.find_income_source(connection, rule.user_id, source_id=rule.income_source_id)
        if rule.income_source_id is not None
        else None
    )
    return {
        "id": rule.id,
        "pattern": rule.pattern,
        "match_type": rule.match_type,
        "applies_to": rule.applies_to,
        "category": category.name if category else None,
        "income_source": source.name if source else None,
    }


def _infer_applies_to(category: str | None, category_id: int | None) -> str:
    if category is not None or category_id is not None:
        return models.EXPENSE
    return models.INCOME


@click.group(help="Manage categorization rules.")
@common_cli_options
@handle_cli_errors
def main(cli_ctx: CLIContext) -> None:
    mode = "DRY-RUN" if cli_ctx.dry_run else "APPLY"
    cli_ctx.logger.debug(f"fin-rules initialised (mode={mode}, db={cli_ctx.db_path})")


@main.command("list")
@click.option(
    "--type",
    "txn_type",
    type=click.Choice(models.TRANSACTION_TYPES),
    help="Only rules that apply to this transaction type.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(OUTPUT_FORMATS),
    default="table",
    show_default=True,
)
@pass_cli_context
@handle_cli_errors
def list_rules(cli_ctx: CLIContext, txn_type: str | None, output_format: str) -> None:
    """List rules in evaluation order."""

    with connect(cli_ctx.config) as connection:
        store = RuleStore(connection, settings=cli_ctx.config.categorization.rules)
        rows = [
            _rule_to_row(connection, rule)
            for rule in store.list_rules(cli_ctx.user_id, txn_type=txn_type)
        ]
    render_rows(RULE_COLUMNS, rows, output_format=output_format, empty_message="No rules defined.")


@main.command("add")
@click.option("--pattern", required=True, type=str, help="Merchant text or regex to match.")
@click.option(
    "--match-type",
    type=click.Choice(models.MATCH_TYPES),
    default=models.MATCH_CONTAINS,
    show_default=True,
)
@click.option(
    "--applies-to",
    type=click.Choice(models.APPLIES_TO_VALUES),
    help="Transaction type (inferred from the target when omitted).",
)
@click.option("--category", type=str, help="Expense category name.")
@click.option("--category-id", type=int, help="Expense category id.")
@click.option("--income-source", type=str, help="Income source name.")
@click.option("--income-source-id", type=int, help="Income source id.")
@click.option("--create-if-missing", is_flag=True, help="Create the named category or income source.")
@pass_cli_context
@handle_cli_errors
def add_rule(
    cli_ctx: CLIContext,
    pattern: str,
    match_type: str,
    applies_to: str | None,
    category: str | None,
    category_id: int | None,
    income_source: str | None,
    income_source_id: int | None,
    create_if_missing: bool,
) -> None:
    """Create a rule."""

    with connect(cli_ctx.config) as connection:
        resolved_category = _resolve_category_id(
            connection,
            cli_ctx.user_id,
            name=category,
            category_id=category_id,
            create=create_if_missing,
        )
        resolved_source = _resolve_income_source_id(
            connection,
            cli_ctx.user_id,
            name=income_source,
            source_id=income_source_id,
            create=create_if_missing,
        )
        effective_applies_to = applies_to or _infer_applies_to(category, category_id)
        store = RuleStore(connection, settings=cli_ctx.config.categorization.rules)
        if cli_ctx.dry_run:
            rule = validate_rule(
                connection,
                CategorizationRule(
                    user_id=cli_ctx.user_id,
                    pattern=pattern,
                    match_type=match_type,
                    applies_to=effective_applies_to,
                    category_id=resolved_category,
                    income_source_id=resolved_source,
                ),
                store.settings,
            )
            connection.rollback()
            cli_ctx.logger.dry_run(f"Would create {match_type} rule '{rule.pattern}'.")
            return
        rule = store.create_rule(
            cli_ctx.user_id,
            pattern,
            match_type=match_type,
            applies_to=effective_applies_to,
            category_id=resolved_category,
            income_source_id=resolved_source,
        )
    cli_ctx.logger.success(f"Created rule id={rule.id} ({rule.match_type} '{rule.pattern}').")


@main.command("update")
@click.argument("rule_id", type=int)
@click.option("--pattern", type=str, help="New pattern.")
@click.option("--match-type", type=click.Choice(models.MATCH_TYPES))
@click.option("--applies-to", type=click.Choice(models.APPLIES_TO_VALUES))
@click.option("--category", type=str, help="New expense category name.")
@click.option("--category-id", type=int, help="New expense category id.")
@click.option("--income-source", type=str, help="New income source name.")
@click.option("--income-source-id", type=int, help="New income source id.")
@pass_cli_context
@handle_cli_errors
def update_rule(
    cli_ctx: CLIContext,
    rule_id: int,
    pattern: str | None,
    match_type: str | None,
    applies_to: str | None,
    category: str | None,
    category_id: int | None,
    income_source: str | None,
    income_source_id: int | None,
) -> None:
    """Update fields of an existing rule; omitted fields are kept."""

    with connect(cli_ctx.config) as connection:
        store = RuleStore(connection, settings=cli_ctx.config.categorization.rules)
        current = store.get_rule(cli_ctx.user_id, rule_id)
        changes: dict[str, Any] = {}
        if pattern is not None:
            changes["pattern"] = pattern
        if match_type is not None:
            changes["match_type"] = match_type
        if applies_to is not None:
            changes["applies_to"] = applies_to
        new_category = _resolve_category_id(
            connection, cli_ctx.user_id, name=category, category_id=category_id, create=False
        )
        new_source = _resolve_income_source_id(
            connection, cli_ctx.user_id, name=income_source, source_id=income_source_id, create=False
        )
        if new_category is not None:
            changes["category_id"] = new_category
        if new_source is not None:
            changes["income_source_id"] = new_source
        # Switching the rule's type drops the target that no longer applies.
        if applies_to == models.INCOME and new_category is None:
            changes["category_id"] = None
        if applies_to == models.EXPENSE and new_source is None:
            changes["income_source_id"] = None
        if not changes:
            raise click.UsageError("Nothing to update; pass at least one option.")
        if cli_ctx.dry_run:
            cli_ctx.logger.dry_run(
                f"Would update rule id={current.id}: "
                + ", ".join(f"{key}={value}" for key, value in changes.items())
            )
            return
        rule = store.update_rule(cli_ctx.user_id, rule_id, **changes)
    cli_ctx.logger.success(f"Updated rule id={rule.id} ({rule.match_type} '{rule.pattern}').")


@main.command("delete")
@click.argument("rule_id", type=int)
@pass_cli_context
@handle_cli_errors
def delete_rule(cli_ctx: CLIContext, rule_id: int) -> None:
    """Delete a rule by id."""

    with connect(cli_ctx.config) as connection:
        store = RuleStore(connection, settings=cli_ctx.config.categorization.rules)
        rule = store.get_rule(cli_ctx.user_id, rule_id)
        if cli_ctx.dry_run:
            cli_ctx.logger.dry_run(f"Would delete rule id={rule.id} ('{rule.pattern}').")
            return
        store.delete_rule(cli_ctx.user_id, rule_id)
    cli_ctx.logger.success(f"Deleted rule id={rule_id}.")


@main.command("suggest")
@click.argument("merchant", type=str)
@click.option("--description", type=str, help="Full transaction description, if different.")
@click.option("--amount", type=float, default=0.0, show_default=True)
@click.option("--accept", is_flag=True, help="Accept the suggestion and learn a rule from it.")
@pass_cli_context
@handle_cli_errors
def suggest(
    cli_ctx: CLIContext,
    merchant: str,
    description: str | None,
    amount: float,
    accept: bool,
) -> None:
    """Ask the advisory model for a category suggestion."""

    advisor = build_advisor(cli_ctx.config, cli_ctx.logger)
    with connect(cli_ctx.config) as connection:
        names = [
            category.name
            for category in models.fetch_expense_categories(connection, cli_ctx.user_id)
            if not is_sentinel_category(category.name)
        ]
        suggestion = request_suggestion(advisor, merchant, description or merchant, amount, names)
        cli_ctx.logger.info(
            f"Suggested '{suggestion.category_name}' (confidence {suggestion.confidence:.2f})"
        )
        if suggestion.rationale:
            cli_ctx.logger.info(f"  {suggestion.rationale}")
        click.echo(suggestion.category_name)
        if not accept:
            return
        if cli_ctx.dry_run:
            cli_ctx.logger.dry_run(f"Would learn '{merchant}' -> '{suggestion.category_name}'.")
            return
        category = models.get_or_create_expense_category(
            connection, cli_ctx.user_id, suggestion.category_name
        )
        store = RuleStore(connection, settings=cli_ctx.config.categorization.rules)
        learned = learn_rule(
            store,
            cli_ctx.user_id,
            merchant,
            category_id=category.id,
            logger=cli_ctx.logger,
        )
    if learned is None:
        cli_ctx.logger.warning(f"No rule learned for '{merchant}'.")
    else:
        action = "Created" if learned.created else "Updated"
        cli_ctx.logger.success(f"{action} rule id={learned.rule.id} -> '{category.name}'.")


@main.command("export")
@click.argument("path", required=False, type=click.Path(path_type=Path, dir_okay=False))
@pass_cli_context
@handle_cli_errors
def export_rules(cli_ctx: CLIContext, path: Path | None) -> None:
    """Write the rule set to a YAML file (default: the user's file under the config dir)."""

    path = path or paths.default_rules_path(cli_ctx.user_id)
    with connect(cli_ctx.config) as connection:
        store = RuleStore(connection, settings=cli_ctx.config.categorization.rules)
        rows = [_rule_to_row(connection, rule) for rule in store.list_rules(cli_ctx.user_id)]
    document = {
        "version": RULES_FILE_VERSION,
        "rules": [{key: value for key, value in row.items() if key != "id"} for row in rows],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document, sort_keys=False, allow_unicode=True), encoding="utf-8")
    cli_ctx.logger.success(f"Exported {len(rows)} rule(s) to {path}.")


def _load_rules_document(path: Path) -> list[Mapping[str, Any]]:
    if not path.exists():
        raise click.ClickException(f"Rules file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Rules file at {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, Mapping) or not isinstance(data.get("rules"), list):
        raise click.ClickException("Rules file must define a 'rules' list.")
    entries = data["rules"]
    for position, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise click.ClickException(f"Rule #{position} is not a mapping.")
    return entries


@main.command("import")
@click.argument("path", required=False, type=click.Path(path_type=Path, dir_okay=False))
@click.option("--replace", is_flag=True, help="Replace the whole rule set atomically.")
@pass_cli_context
@handle_cli_errors
def import_rules(cli_ctx: CLIContext, path: Path | None, replace: bool) -> None:
    """Load rules from a YAML file, creating missing categories and income sources."""

    path = path or paths.default_rules_path(cli_ctx.user_id)
    entries = _load_rules_document(path)
    with connect(cli_ctx.config) as connection:
        store = RuleStore(connection, settings=cli_ctx.config.categorization.rules)
        rules: list[CategorizationRule] = []
        for entry in entries:
            category_name = entry.get("category")
            source_name = entry.get("income_source")
            rules.append(
                CategorizationRule(
                    user_id=cli_ctx.user_id,
                    pattern=str(entry.get("pattern") or ""),
                    match_type=str(entry.get("match_type") or models.MATCH_CONTAINS),
                    applies_to=str(
                        entry.get("applies_to") or _infer_applies_to(category_name, None)
                    ),
                    category_id=_resolve_category_id(
                        connection,
                        cli_ctx.user_id,
                        name=str(category_name) if category_name else None,
                        category_id=None,
                        create=True,
                    ),
                    income_source_id=_resolve_income_source_id(
                        connection,
                        cli_ctx.user_id,
                        name=str(source_name) if source_name else None,
                        source_id=None,
                        create=True,
                    ),
                )
            )
        if cli_ctx.dry_run:
            for rule in rules:
                validate_rule(connection, rule, store.settings)
            connection.rollback()
            cli_ctx.logger.dry_run(f"{len(rules)} rule(s) in {path} are valid.")
            return
        if replace:
            store.replace_rules(cli_ctx.user_id, rules)
            cli_ctx.logger.success(f"Replaced rule set with {len(rules)} rule(s) from {path}.")
            return
        for rule in rules:
            store.create_rule(
                cli_ctx.user_id,
                rule.pattern,
                match_type=rule.match_type,
                applies_to=rule.applies_to,
                category_id=rule.category_id,
                income_source_id=rule.income_source_id,
            )
    cli_ctx.logger.success(f"Imported {len(rules)} rule(s) from {path}.")


if __name__ == "__main__":  # pragma: no cover
    main()
