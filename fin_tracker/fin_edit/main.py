"""fin-edit CLI: manual entry and corrections for the finance DB.

Default behaviour is dry-run (preview only). Use --apply to perform writes.

Manual assignments teach the rule learner; automated re-categorization does not.
"""

from __future__ import annotations

import sqlite3
from datetime import date

import click
from dateutil import parser as date_parser

from fin_tracker.fin_import.categorizer.learner import learn_rule
from fin_tracker.fin_import.categorizer.resolver import CategoryResolver
from fin_tracker.fin_import.categorizer.rules import RuleStore
from fin_tracker.shared import models
from fin_tracker.shared.cli import (
    CLIContext,
    common_cli_options,
    handle_cli_errors,
    pass_cli_context,
)
from fin_tracker.shared.database import connect
from fin_tracker.shared.merchants import is_sentinel_category
from fin_tracker.shared.models import ExpenseCategory, IncomeSource, Transaction
from fin_tracker.shared.render import OUTPUT_FORMATS, render_rows


def _effective_dry_run(cli_ctx: CLIContext) -> bool:
    """Return True when we should avoid writes.

    - If user passes --apply, we allow writes unless --dry-run is also passed.
    - Without --apply we stay in preview mode.
    """

    apply_flag = bool(cli_ctx.state.get("apply_flag"))
    return cli_ctx.dry_run or (not apply_flag)


def _format_transaction_summary(
    txn: Transaction,
    category: ExpenseCategory | None = None,
    source: IncomeSource | None = None,
) -> str:
    if txn.type == models.EXPENSE:
        target = category.name if category else "(uncategorized)"
    else:
        target = source.name if source else "(no income source)"
    merchant = txn.merchant_name or txn.description
    return f"id={txn.id}: {txn.date.isoformat()} {txn.type} {merchant} ${txn.amount:,.2f} [{target}]"


def _parse_date(value: str) -> date:
    try:
        return date_parser.parse(value).date()
    except (ValueError, OverflowError) as exc:
        raise click.BadParameter(f"Invalid date '{value}'.") from exc


def _reject_sentinel(name: str) -> None:
    if is_sentinel_category(name):
        raise click.ClickException(
            f"'{name}' is a reserved placeholder category and cannot be assigned."
        )


def _lookup_category(
    connection: sqlite3.Connection,
    cli_ctx: CLIContext,
    *,
    name: str | None,
    category_id: int | None,
    create_if_missing: bool,
    preview: bool,
) -> tuple[ExpenseCategory | None, str | None]:
    """Return (category, pending_name); pending_name is set when creation is deferred."""

    if category_id is not None:
        category = models.find_expense_category(connection, cli_ctx.user_id, category_id=category_id)
        if category is None:
            raise click.ClickException(f"Category id {category_id} does not exist.")
        _reject_sentinel(category.name)
        return category, None
    if not name:
        return None, None
    _reject_sentinel(name)
    category = models.find_expense_category(connection, cli_ctx.user_id, name=name)
    if category is not None:
        return category, None
    if not create_if_missing:
        raise click.ClickException(
            f"Category does not exist: '{name}'. Use --create-if-missing to create it."
        )
    if preview:
        cli_ctx.logger.dry_run(f"Would create category: {name}")
        return None, name
    category = models.create_expense_category(connection, cli_ctx.user_id, name)
    cli_ctx.logger.success(f"Created category '{category.name}' (id={category.id}).")
    return category, None


def _lookup_income_source(
    connection: sqlite3.Connection,
    cli_ctx: CLIContext,
    *,
    name: str | None,
    source_id: int | None,
    create_if_missing: bool,
    preview: bool,
) -> tuple[IncomeSource | None, str | None]:
    if source_id is not None:
        source = models.find_income_source(connection, cli_ctx.user_id, source_id=source_id)
        if source is None:
            raise click.ClickException(f"Income source id {source_id} does not exist.")
        return source, None
    if not name:
        return None, None
    source = models.find_income_source(connection, cli_ctx.user_id, name=name)
    if source is not None:
        return source, None
    if not create_if_missing:
        raise click.ClickException(
            f"Income source does not exist: '{name}'. Use --create-if-missing to create it."
        )
    if preview:
        cli_ctx.logger.dry_run(f"Would create income source: {name}")
        return None, name
    source = models.get_or_create_income_source(connection, cli_ctx.user_id, name)
    cli_ctx.logger.success(f"Created income source '{source.name}' (id={source.id}).")
    return source, None


def _learn(
    connection: sqlite3.Connection,
    cli_ctx: CLIContext,
    merchant: str | None,
    *,
    category: ExpenseCategory | None,
    source: IncomeSource | None,
) -> None:
    store = RuleStore(connection, settings=cli_ctx.config.categorization.rules)
    learned = learn_rule(
        store,
        cli_ctx.user_id,
        merchant,
        category_id=category.id if category else None,
        income_source_id=source.id if source else None,
        logger=cli_ctx.logger,
    )
    if learned is not None:
        action = "Learned" if learned.created else "Updated"
        cli_ctx.logger.info(f"{action} rule id={learned.rule.id} for '{learned.rule.pattern}'.")


@click.group(help="Edit utilities for manual entry, corrections and categories.")
@click.option("--apply", is_flag=True, help="Perform writes (default is preview only).")
@common_cli_options
@handle_cli_errors
def main(apply: bool, cli_ctx: CLIContext) -> None:
    # Stash apply flag for subcommands
    cli_ctx.state["apply_flag"] = bool(apply)
    mode = "APPLY" if apply and not cli_ctx.dry_run else "DRY-RUN"
    cli_ctx.logger.debug(f"fin-edit initialised (mode={mode}, db={cli_ctx.db_path})")


@main.command("add-category")
@click.argument("name", type=str)
@click.option(
    "--type",
    "category_type",
    type=click.Choice(["fixed", "variable"]),
    help="Category type (inferred from the name when omitted).",
)
@click.option("--color", "color_hex", type=str, help="Hex colour; next free palette colour when omitted.")
@pass_cli_context
@handle_cli_errors
def add_category(
    cli_ctx: CLIContext, name: str, category_type: str | None, color_hex: str | None
) -> None:
    """Create an expense category."""

    _reject_sentinel(name)
    preview = _effective_dry_run(cli_ctx)
    with connect(cli_ctx.config) as connection:
        existing = models.find_expense_category(connection, cli_ctx.user_id, name=name)
        if existing is not None:
            cli_ctx.logger.warning(f"Category '{existing.name}' already exists (id={existing.id}).")
            return
        if preview:
            cli_ctx.logger.dry_run(f"Would create category '{name.strip()}'.")
            return
        category = models.create_expense_category(
            connection,
            cli_ctx.user_id,
            name,
            category_type=category_type,
            color_hex=color_hex,
        )
    cli_ctx.logger.success(
        f"Created category '{category.name}' (id={category.id}, {category.category_type}, {category.color_hex})."
    )


@main.command("add-income-source")
@click.argument("name", type=str)
@click.option("--source-type", default="other", show_default=True, type=str)
@pass_cli_context
@handle_cli_errors
def add_income_source(cli_ctx: CLIContext, name: str, source_type: str) -> None:
    """Create an income source."""

    preview = _effective_dry_run(cli_ctx)
    with connect(cli_ctx.config) as connection:
        existing = models.find_income_source(connection, cli_ctx.user_id, name=name)
        if existing is not None:
            cli_ctx.logger.warning(f"Income source '{existing.name}' already exists (id={existing.id}).")
            return
        if preview:
            cli_ctx.logger.dry_run(f"Would create income source '{name.strip()}'.")
            return
        source = models.get_or_create_income_source(
            connection, cli_ctx.user_id, name, source_type=source_type
        )
    cli_ctx.logger.success(f"Created income source '{source.name}' (id={source.id}).")


@main.command("list-categories")
@click.option("--income", "show_income", is_flag=True, help="List income sources instead.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(OUTPUT_FORMATS),
    default="table",
    show_default=True,
)
@pass_cli_context
@handle_cli_errors
def list_categories(cli_ctx: CLIContext, show_income: bool, output_format: str) -> None:
    """List expense categories (or income sources)."""

    with connect(cli_ctx.config) as connection:
        if show_income:
            columns = ("id", "name", "source_type")
            rows = [
                {"id": source.id, "name": source.name, "source_type": source.source_type}
                for source in models.fetch_income_sources(connection, cli_ctx.user_id)
            ]
        else:
            columns = ("id", "name", "category_type", "color_hex")
            rows = [
                {
                    "id": category.id,
                    "name": category.name,
                    "category_type": category.category_type,
                    "color_hex": category.color_hex,
                }
                for category in models.fetch_expense_categories(connection, cli_ctx.user_id)
            ]
    render_rows(columns, rows, output_format=output_format, empty_message="Nothing defined yet.")


@main.command("add-transaction")
@click.option("--date", "date_value", required=True, type=str, help="Transaction date.")
@click.option("--amount", required=True, type=float, help="Amount (sign is ignored).")
@click.option(
    "--type",
    "txn_type",
    type=click.Choice(models.TRANSACTION_TYPES),
    default=models.EXPENSE,
    show_default=True,
)
@click.option("--description", required=True, type=str)
@click.option("--merchant", type=str, help="Merchant name (used for rule learning).")
@click.option("--category", type=str, help="Expense category name.")
@click.option("--category-id", type=int, help="Expense category id.")
@click.option("--income-source", type=str, help="Income source name.")
@click.option("--income-source-id", type=int, help="Income source id.")
@click.option("--account-number", type=str)
@click.option("--create-if-missing", is_flag=True, help="Create the named category or income source.")
@pass_cli_context
@handle_cli_errors
def add_transaction(
    cli_ctx: CLIContext,
    date_value: str,
    amount: float,
    txn_type: str,
    description: str,
    merchant: str | None,
    category: str | None,
    category_id: int | None,
    income_source: str | None,
    income_source_id: int | None,
    account_number: str | None,
    create_if_missing: bool,
) -> None:
    """Record a transaction by hand."""

    if txn_type == models.EXPENSE and (income_source or income_source_id is not None):
        raise click.UsageError("Expenses take --category/--category-id, not an income source.")
    if txn_type == models.INCOME and (category or category_id is not None):
        raise click.UsageError("Income takes --income-source/--income-source-id, not a category.")

    preview = _effective_dry_run(cli_ctx)
    txn_date = _parse_date(date_value)
    with connect(cli_ctx.config) as connection:
        target_category, _ = _lookup_category(
            connection,
            cli_ctx,
            name=category,
            category_id=category_id,
            create_if_missing=create_if_missing,
            preview=preview,
        )
        target_source, _ = _lookup_income_source(
            connection,
            cli_ctx,
            name=income_source,
            source_id=income_source_id,
            create_if_missing=create_if_missing,
            preview=preview,
        )
        txn = Transaction(
            user_id=cli_ctx.user_id,
            date=txn_date,
            amount=abs(amount),
            type=txn_type,
            description=description.strip(),
            merchant_name=merchant.strip() if merchant else None,
            expense_category_id=target_category.id if target_category else None,
            income_source_id=target_source.id if target_source else None,
            account_number=account_number,
        )
        txn.fingerprint = txn.compute_fingerprint()
        if models.transaction_exists(connection, cli_ctx.user_id, txn.fingerprint):
            cli_ctx.logger.warning("An identical transaction already exists; nothing to add.")
            return
        if preview:
            cli_ctx.logger.dry_run(
                f"Would add {txn_type} {txn.merchant_name or txn.description} "
                f"${txn.amount:,.2f} on {txn.date.isoformat()}."
            )
            return
        inserted = models.insert_transaction(connection, txn)
        if inserted is None:
            cli_ctx.logger.warning("An identical transaction already exists; nothing to add.")
            return
        if merchant:
            _learn(connection, cli_ctx, merchant, category=target_category, source=target_source)
    cli_ctx.logger.success(f"Added {_format_transaction_summary(txn, target_category, target_source)}")


@main.command("set-category")
@click.argument("transaction_id", type=int)
@click.option("--category", type=str, help="Expense category name.")
@click.option("--category-id", type=int, help="Expense category id.")
@click.option("--income-source", type=str, help="Income source name (income transactions).")
@click.option("--income-source-id", type=int, help="Income source id (income transactions).")
@click.option(
    "--create-if-missing",
    is_flag=True,
    help="Create the category/income source if it does not exist.",
)
@click.option("--no-learn", is_flag=True, help="Do not update merchant rules from this correction.")
@pass_cli_context
@handle_cli_errors
def set_category(
    cli_ctx: CLIContext,
    transaction_id: int,
    category: str | None,
    category_id: int | None,
    income_source: str | None,
    income_source_id: int | None,
    create_if_missing: bool,
    no_learn: bool,
) -> None:
    """Assign a category (or income source) to a transaction by id."""

    expense_selectors = [bool(category), category_id is not None]
    income_selectors = [bool(income_source), income_source_id is not None]
    if sum(expense_selectors) + sum(income_selectors) != 1:
        raise click.UsageError(
            "Provide exactly one of --category, --category-id, --income-source, or --income-source-id."
        )

    preview = _effective_dry_run(cli_ctx)
    with connect(cli_ctx.config) as connection:
        txn = models.fetch_transaction(connection, cli_ctx.user_id, transaction_id)
        if txn is None:
            raise click.ClickException(f"Transaction id={transaction_id} not found.")
        if txn.type == models.EXPENSE and any(income_selectors):
            raise click.UsageError("Expense transactions take a category, not an income source.")
        if txn.type == models.INCOME and any(expense_selectors):
            raise click.UsageError("Income transactions take an income source, not a category.")

        target_category, pending_category = _lookup_category(
            connection,
            cli_ctx,
            name=category,
            category_id=category_id,
            create_if_missing=create_if_missing,
            preview=preview,
        )
        target_source, pending_source = _lookup_income_source(
            connection,
            cli_ctx,
            name=income_source,
            source_id=income_source_id,
            create_if_missing=create_if_missing,
            preview=preview,
        )
        target_name = (
            target_category.name
            if target_category
            else target_source.name
            if target_source
            else pending_category or pending_source
        )
        cli_ctx.logger.info(_format_transaction_summary(txn))
        if preview:
            cli_ctx.logger.dry_run(f"Would set transaction id={txn.id} -> '{target_name}'.")
            return

        updated = models.update_transaction_assignment(
            connection,
            cli_ctx.user_id,
            transaction_id,
            expense_category_id=target_category.id if target_category else None,
            income_source_id=target_source.id if target_source else None,
        )
        if not updated:
            raise click.ClickException(f"Expected to update transaction id={transaction_id}.")
        if not no_learn:
            _learn(
                connection,
                cli_ctx,
                txn.merchant_name or txn.description,
                category=target_category,
                source=target_source,
            )
    cli_ctx.logger.success(f"Updated transaction id={transaction_id} -> '{target_name}'.")


@main.command("delete-transaction")
@click.argument("transaction_id", type=int)
@pass_cli_context
@handle_cli_errors
def delete_transaction(cli_ctx: CLIContext, transaction_id: int) -> None:
    """Delete a transaction by id."""

    preview = _effective_dry_run(cli_ctx)
    with connect(cli_ctx.config) as connection:
        txn = models.fetch_transaction(connection, cli_ctx.user_id, transaction_id)
        if txn is None:
            raise click.ClickException(f"Transaction id={transaction_id} not found.")
        summary = _format_transaction_summary(txn)
        if preview:
            cli_ctx.logger.dry_run(f"Would delete {summary}")
            return
        models.delete_transaction(connection, cli_ctx.user_id, transaction_id)
    cli_ctx.logger.success(f"Deleted {summary}")


@main.command("recategorize")
@click.option("--year", type=int, help="Limit to a year (requires --month).")
@click.option("--month", type=click.IntRange(1, 12), help="Limit to a month (requires --year).")
@pass_cli_context
@handle_cli_errors
def recategorize(cli_ctx: CLIContext, year: int | None, month: int | None) -> None:
    """Re-run rules and heuristics over unassigned or placeholder-assigned transactions."""

    if (year is None) != (month is None):
        raise click.UsageError("--year and --month must be given together.")
    preview = _effective_dry_run(cli_ctx)
    with connect(cli_ctx.config) as connection:
        resolver = CategoryResolver(
            connection,
            cli_ctx.user_id,
            settings=cli_ctx.config.categorization,
            logger=cli_ctx.logger,
        )
        pending = models.fetch_unassigned_transactions(
            connection, cli_ctx.user_id, year=year, month=month
        )
        cli_ctx.logger.info(f"Found {len(pending)} transaction(s) without a usable assignment.")
        updated = 0
        for txn in pending:
            resolution = resolver.resolve(txn)
            if not resolution.resolved:
                continue
            label = resolution.category_name or resolution.income_source_name
            if preview:
                cli_ctx.logger.dry_run(
                    f"Would set id={txn.id} -> '{label}' ({resolution.method})"
                )
                updated += 1
                continue
            category_id = resolution.category_id
            if txn.type == models.EXPENSE and category_id is None and resolution.category_name:
                category_id = models.get_or_create_expense_category(
                    connection, cli_ctx.user_id, resolution.category_name
                ).id
            models.update_transaction_assignment(
                connection,
                cli_ctx.user_id,
                int(txn.id),
                expense_category_id=category_id,
                income_source_id=resolution.income_source_id,
            )
            updated += 1
    if preview:
        cli_ctx.logger.dry_run(f"{updated} transaction(s) would be re-categorized.")
    else:
        cli_ctx.logger.success(f"Re-categorized {updated} transaction(s).")


if __name__ == "__main__":  # pragma: no cover
    main()
