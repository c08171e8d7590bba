"""Data models and helper functions for database interactions."""

from __future__ import annotations

import hashlib
import re
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime

from .colors import next_available_color
from .exceptions import DatabaseError
from .merchants import normalize_merchant

INCOME = "income"
EXPENSE = "expense"
TRANSACTION_TYPES = (INCOME, EXPENSE)

MATCH_EXACT = "exact"
MATCH_CONTAINS = "contains"
MATCH_REGEX = "regex"
MATCH_TYPES = (MATCH_EXACT, MATCH_CONTAINS, MATCH_REGEX)

APPLIES_BOTH = "both"
APPLIES_TO_VALUES = (EXPENSE, INCOME, APPLIES_BOTH)

FIXED_CATEGORY_RE = re.compile(r"rent|insurance|loan|mortgage|subscription", re.IGNORECASE)


@dataclass(slots=True)
class ExpenseCategory:
    id: int
    user_id: str
    name: str
    category_type: str = "variable"
    color_hex: str | None = None


@dataclass(slots=True)
class IncomeSource:
    id: int
    user_id: str
    name: str
    source_type: str = "other"


@dataclass(slots=True)
class Transaction:
    user_id: str
    date: date
    amount: float
    type: str
    description: str
    merchant_name: str | None = None
    expense_category_id: int | None = None
    income_source_id: int | None = None
    fingerprint: str | None = None
    csv_category: str | None = None
    account_name: str | None = None
    account_number: str | None = None
    institution_name: str | None = None
    id: int | None = None

    def compute_fingerprint(self) -> str:
        return compute_transaction_fingerprint(
            self.user_id,
            self.date,
            self.amount,
            self.merchant_name or self.description,
            self.account_number,
        )


@dataclass(slots=True)
class CategorizationRule:
    user_id: str
    pattern: str
    match_type: str
    applies_to: str
    category_id: int | None = None
    income_source_id: int | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def applies(self, txn_type: str) -> bool:
        return self.applies_to in (txn_type, APPLIES_BOTH)

    def target_for(self, txn_type: str) -> int | None:
        """Return the category id for expenses or the income source id for income."""
        if not self.applies(txn_type):
            return None
        if txn_type == EXPENSE:
            return self.category_id
        return self.income_source_id


def compute_transaction_fingerprint(
    user_id: str,
    txn_date: date | datetime,
    amount: float,
    merchant: str | None,
    account_number: str | None = None,
) -> str:
    """Return a deterministic SHA-256 hash identifying a transaction for deduplication.

    Bank-assigned ids are unstable across repeated exports of the same statement,
    so identity is derived from content: user, day, absolute amount, normalized
    merchant and account number.
    """
    if isinstance(txn_date, datetime):
        txn_date = txn_date.date()
    normalized = "|".join(
        [
            user_id,
            txn_date.isoformat(),
            f"{abs(amount):.2f}",
            normalize_merchant(merchant),
            (account_number or "").strip(),
        ]
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Expense categories and income sources


def _row_to_category(row: sqlite3.Row) -> ExpenseCategory:
    return ExpenseCategory(
        id=int(row["id"]),
        user_id=str(row["user_id"]),
        name=str(row["name"]),
        category_type=str(row["category_type"]),
        color_hex=row["color_hex"],
    )


def _row_to_income_source(row: sqlite3.Row) -> IncomeSource:
    return IncomeSource(
        id=int(row["id"]),
        user_id=str(row["user_id"]),
        name=str(row["name"]),
        source_type=str(row["source_type"]),
    )


def fetch_expense_categories(connection: sqlite3.Connection, user_id: str) -> list[ExpenseCategory]:
    """Return every expense category for the user ordered by name."""

    rows = connection.execute(
        "SELECT * FROM expense_categories WHERE user_id = ? ORDER BY LOWER(name), id",
        (user_id,),
    ).fetchall()
    return [_row_to_category(row) for row in rows]


def find_expense_category(
    connection: sqlite3.Connection,
    user_id: str,
    *,
    category_id: int | None = None,
    name: str | None = None,
) -> ExpenseCategory | None:
    """Look up a category by id or by case-insensitive name."""

    if category_id is not None:
        row = connection.execute(
            "SELECT * FROM expense_categories WHERE user_id = ? AND id = ?",
            (user_id, category_id),
        ).fetchone()
    elif name is not None:
        row = connection.execute(
            "SELECT * FROM expense_categories WHERE user_id = ? AND LOWER(name) = LOWER(?)",
            (user_id, name.strip()),
        ).fetchone()
    else:
        raise ValueError("category_id or name is required")
    return _row_to_category(row) if row else None


def create_expense_category(
    connection: sqlite3.Connection,
    user_id: str,
    name: str,
    *,
    category_type: str | None = None,
    color_hex: str | None = None,
) -> ExpenseCategory:
    """Insert a category, inferring its type and picking the next free colour."""

    cleaned = name.strip()
    if not cleaned:
        raise ValueError("Category name cannot be empty.")
    if category_type is None:
        category_type = "fixed" if FIXED_CATEGORY_RE.search(cleaned) else "variable"
    if color_hex is None:
        used = [
            row["color_hex"]
            for row in connection.execute(
                "SELECT color_hex FROM expense_categories WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        ]
        color_hex = next_available_color(used)
    cursor = connection.execute(
        """
        INSERT INTO expense_categories (user_id, name, category_type, color_hex)
        VALUES (?, ?, ?, ?)
        """,
        (user_id, cleaned, category_type, color_hex),
    )
    return ExpenseCategory(
        id=int(cursor.lastrowid),
        user_id=user_id,
        name=cleaned,
        category_type=category_type,
        color_hex=color_hex,
    )


def get_or_create_expense_category(
    connection: sqlite3.Connection,
    user_id: str,
    name: str,
    *,
    category_type: str | None = None,
) -> ExpenseCategory:
    existing = find_expense_category(connection, user_id, name=name)
    if existing is not None:
        return existing
    return create_expense_category(connection, user_id, name, category_type=category_type)


def fetch_income_sources(connection: sqlite3.Connection, user_id: str) -> list[IncomeSource]:
    rows = connection.execute(
        "SELECT * FROM income_sources WHERE user_id = ? ORDER BY LOWER(name), id",
        (user_id,),
    ).fetchall()
    return [_row_to_income_source(row) for row in rows]


def find_income_source(
    connection: sqlite3.Connection,
    user_id: str,
    *,
    source_id: int | None = None,
    name: str | None = None,
) -> IncomeSource | None:
    if source_id is not None:
        row = connection.execute(
            "SELECT * FROM income_sources WHERE user_id = ? AND id = ?",
            (user_id, source_id),
        ).fetchone()
    elif name is not None:
        row = connection.execute(
            "SELECT * FROM income_sources WHERE user_id = ? AND LOWER(name) = LOWER(?)",
            (user_id, name.strip()),
        ).fetchone()
    else:
        raise ValueError("source_id or name is required")
    return _row_to_income_source(row) if row else None


def get_or_create_income_source(
    connection: sqlite3.Connection,
    user_id: str,
    name: str,
    *,
    source_type: str = "other",
) -> IncomeSource:
    existing = find_income_source(connection, user_id, name=name)
    if existing is not None:
        return existing
    cleaned = name.strip()
    if not cleaned:
        raise ValueError("Income source name cannot be empty.")
    cursor = connection.execute(
        "INSERT INTO income_sources (user_id, name, source_type) VALUES (?, ?, ?)",
        (user_id, cleaned, source_type),
    )
    return IncomeSource(id=int(cursor.lastrowid), user_id=user_id, name=cleaned, source_type=source_type)


# ---------------------------------------------------------------------------
# Transactions


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=int(row["id"]),
        user_id=str(row["user_id"]),
        date=date.fromisoformat(str(row["date"])),
        amount=float(row["amount"]),
        type=str(row["type"]),
        description=str(row["description"]),
        merchant_name=row["merchant_name"],
        expense_category_id=row["expense_category_id"],
        income_source_id=row["income_source_id"],
        fingerprint=row["fingerprint"],
        csv_category=row["csv_category"],
        account_name=row["account_name"],
        account_number=row["account_number"],
        institution_name=row["institution_name"],
    )


def transaction_exists(connection: sqlite3.Connection, user_id: str, fingerprint: str) -> bool:
    """Fast-path duplicate check; the unique index remains the source of truth."""

    row = connection.execute(
        "SELECT 1 FROM transactions WHERE user_id = ? AND fingerprint = ? LIMIT 1",
        (user_id, fingerprint),
    ).fetchone()
    return row is not None


def insert_transaction(
    connection: sqlite3.Connection,
    transaction: Transaction,
    *,
    skip_dedupe: bool = False,
) -> int | None:
    """Insert a transaction and return its id, or None when it is a duplicate.

    A concurrent writer can pass the pre-check and win the race; the resulting
    unique-constraint violation is reported as a duplicate too.
    """
    fingerprint = transaction.fingerprint
    if fingerprint and not skip_dedupe and transaction_exists(
        connection, transaction.user_id, fingerprint
    ):
        return None
    try:
        cursor = connection.execute(
            """
            INSERT INTO transactions (
                user_id,
                date,
                amount,
                type,
                description,
                merchant_name,
                expense_category_id,
                income_source_id,
                fingerprint,
                csv_category,
                account_name,
                account_number,
                institution_name
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transaction.user_id,
                transaction.date.isoformat(),
                abs(transaction.amount),
                transaction.type,
                transaction.description,
                transaction.merchant_name,
                transaction.expense_category_id if transaction.type == EXPENSE else None,
                transaction.income_source_id if transaction.type == INCOME else None,
                fingerprint,
                transaction.csv_category,
                transaction.account_name,
                transaction.account_number,
                transaction.institution_name,
            ),
        )
    except sqlite3.IntegrityError as exc:
        if fingerprint and transaction_exists(connection, transaction.user_id, fingerprint):
            return None
        raise DatabaseError(f"Failed to insert transaction: {exc}") from exc
    transaction.id = int(cursor.lastrowid)
    return transaction.id


def fetch_transaction(
    connection: sqlite3.Connection,
    user_id: str,
    transaction_id: int,
) -> Transaction | None:
    row = connection.execute(
        "SELECT * FROM transactions WHERE user_id = ? AND id = ?",
        (user_id, transaction_id),
    ).fetchone()
    return _row_to_transaction(row) if row else None


def fetch_transactions(
    connection: sqlite3.Connection,
    user_id: str,
    *,
    year: int | None = None,
    month: int | None = None,
) -> list[Transaction]:
    query = "SELECT * FROM transactions WHERE user_id = ?"
    params: list[object] = [user_id]
    if year is not None and month is not None:
        query += " AND strftime('%Y-%m', date) = ?"
        params.append(f"{year:04d}-{month:02d}")
    query += " ORDER BY date ASC, id ASC"
    return [_row_to_transaction(row) for row in connection.execute(query, params).fetchall()]


def fetch_unassigned_transactions(
    connection: sqlite3.Connection,
    user_id: str,
    *,
    year: int | None = None,
    month: int | None = None,
) -> list[Transaction]:
    """Return transactions without a usable assignment.

    Expenses pointing at a reserved placeholder category count as unassigned.
    """
    query = """
        SELECT t.*
        FROM transactions t
        LEFT JOIN expense_categories c ON c.id = t.expense_category_id
        WHERE t.user_id = ?
          AND (
            (t.type = 'expense' AND (
                t.expense_category_id IS NULL
                OR LOWER(TRIM(c.name)) IN ('uncategorized', 'n/a')
            ))
            OR (t.type = 'income' AND t.income_source_id IS NULL)
          )
    """
    params: list[object] = [user_id]
    if year is not None and month is not None:
        query += " AND strftime('%Y-%m', t.date) = ?"
        params.append(f"{year:04d}-{month:02d}")
    query += " ORDER BY t.date ASC, t.id ASC"
    return [_row_to_transaction(row) for row in connection.execute(query, params).fetchall()]


def update_transaction_assignment(
    connection: sqlite3.Connection,
    user_id: str,
    transaction_id: int,
    *,
    expense_category_id: int | None = None,
    income_source_id: int | None = None,
) -> bool:
    cursor = connection.execute(
        """
        UPDATE transactions
        SET expense_category_id = CASE WHEN type = 'expense' THEN ? ELSE NULL END,
            income_source_id = CASE WHEN type = 'income' THEN ? ELSE NULL END,
            updated_at = CURRENT_TIMESTAMP
        WHERE user_id = ? AND id = ?
        """,
        (expense_category_id, income_source_id, user_id, transaction_id),
    )
    return cursor.rowcount == 1


def delete_transaction(connection: sqlite3.Connection, user_id: str, transaction_id: int) -> bool:
    cursor = connection.execute(
        "DELETE FROM transactions WHERE user_id = ? AND id = ?",
        (user_id, transaction_id),
    )
    return cursor.rowcount == 1


# ---------------------------------------------------------------------------
# Categorization rules


def _row_to_rule(row: sqlite3.Row) -> CategorizationRule:
    return CategorizationRule(
        id=int(row["id"]),
        user_id=str(row["user_id"]),
        pattern=str(row["pattern"]),
        match_type=str(row["match_type"]),
        applies_to=str(row["applies_to"]),
        category_id=row["category_id"],
        income_source_id=row["income_source_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def fetch_rules(
    connection: sqlite3.Connection,
    user_id: str,
    *,
    txn_type: str | None = None,
) -> list[CategorizationRule]:
    """Return a user's rules in evaluation order.

    Exact rules come first, then the longest (most specific) patterns; id breaks ties.
    """
    query = "SELECT * FROM categorization_rules WHERE user_id = ?"
    params: list[object] = [user_id]
    if txn_type is not None:
        query += " AND applies_to IN (?, 'both')"
        params.append(txn_type)
    query += """
        ORDER BY CASE match_type WHEN 'exact' THEN 0 ELSE 1 END,
                 LENGTH(pattern) DESC,
                 id ASC
    """
    return [_row_to_rule(row) for row in connection.execute(query, params).fetchall()]


def fetch_rule(
    connection: sqlite3.Connection,
    user_id: str,
    rule_id: int,
) -> CategorizationRule | None:
    row = connection.execute(
        "SELECT * FROM categorization_rules WHERE user_id = ? AND id = ?",
        (user_id, rule_id),
    ).fetchone()
    return _row_to_rule(row) if row else None


def find_rule_by_pattern(
    connection: sqlite3.Connection,
    user_id: str,
    pattern: str,
    match_type: str,
) -> CategorizationRule | None:
    row = connection.execute(
        """
        SELECT * FROM categorization_rules
        WHERE user_id = ? AND pattern = ? AND match_type = ?
        ORDER BY id ASC
        LIMIT 1
        """,
        (user_id, pattern, match_type),
    ).fetchone()
    return _row_to_rule(row) if row else None


def insert_rule(connection: sqlite3.Connection, rule: CategorizationRule) -> int:
    cursor = connection.execute(
        """
        INSERT INTO categorization_rules (
            user_id, pattern, match_type, applies_to, category_id, income_source_id
        ) VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            rule.user_id,
            rule.pattern,
            rule.match_type,
            rule.applies_to,
            rule.category_id,
            rule.income_source_id,
        ),
    )
    rule.id = int(cursor.lastrowid)
    return rule.id


def update_rule(connection: sqlite3.Connection, rule: CategorizationRule) -> None:
    if rule.id is None:
        raise DatabaseError("Cannot update a rule without an id.")
    connection.execute(
        """
        UPDATE categorization_rules
        SET pattern = ?,
            match_type = ?,
            applies_to = ?,
            category_id = ?,
            income_source_id = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE user_id = ? AND id = ?
        """,
        (
            rule.pattern,
            rule.match_type,
            rule.applies_to,
            rule.category_id,
            rule.income_source_id,
            rule.user_id,
            rule.id,
        ),
    )


def delete_rule(connection: sqlite3.Connection, user_id: str, rule_id: int) -> bool:
    cursor = connection.execute(
        "DELETE FROM categorization_rules WHERE user_id = ? AND id = ?",
        (user_id, rule_id),
    )
    return cursor.rowcount == 1


def delete_rules_for_user(connection: sqlite3.Connection, user_id: str) -> int:
    cursor = connection.execute(
        "DELETE FROM categorization_rules WHERE user_id = ?",
        (user_id,),
    )
    return cursor.rowcount
