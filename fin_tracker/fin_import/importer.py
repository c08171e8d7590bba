"""CSV transaction parser for fin-import."""

from __future__ import annotations

import csv
import io
import math
import sys
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from dateutil import parser as date_parser

from fin_tracker.shared.config import ImportSettings
from fin_tracker.shared.exceptions import CSVImportError
from fin_tracker.shared.logging import Logger
from fin_tracker.shared.merchants import normalize_merchant
from fin_tracker.shared.paths import is_stdin
from fin_tracker.shared.models import EXPENSE, INCOME, compute_transaction_fingerprint

# Header aliases in order of preference.
DATE_HEADERS = ("original date", "date")
AMOUNT_HEADERS = ("amount",)
NAME_HEADERS = ("name",)
DESCRIPTION_HEADERS = ("description",)
CATEGORY_HEADERS = ("category",)
ACCOUNT_NAME_HEADERS = ("account name",)
ACCOUNT_NUMBER_HEADERS = ("account number",)
INSTITUTION_HEADERS = ("institution name",)


@dataclass(slots=True)
class ParsedTransaction:
    """A normalized row from a bank export."""

    row_number: int
    date: date
    amount: float
    type: str
    description: str
    merchant_name: str
    fingerprint: str
    csv_category: str | None = None
    account_name: str | None = None
    account_number: str | None = None
    institution_name: str | None = None


@dataclass(slots=True)
class _ColumnMap:
    date: int
    amount: int
    name: int | None = None
    description: int | None = None
    category: int | None = None
    account_name: int | None = None
    account_number: int | None = None
    institution_name: int | None = None


@dataclass(slots=True)
class ParseStats:
    dropped_rows: list[int] = field(default_factory=list)
    excluded_rows: list[int] = field(default_factory=list)


class CSVTransactionSource:
    """Lazy iterable over the rows of a CSV export.

    Every iteration re-reads the text from the start, so a source can be
    previewed and then committed without holding all records in memory.
    Rows whose date or amount cannot be parsed are dropped; their 1-based file
    row numbers are kept in ``stats`` for the latest pass.
    """

    def __init__(
        self,
        text: str,
        user_id: str,
        *,
        settings: ImportSettings,
        logger: Logger | None = None,
        source_name: str = "input",
    ) -> None:
        self.text = text[1:] if text.startswith("\ufeff") else text
        self.user_id = user_id
        self.settings = settings
        self.logger = logger
        self.source_name = source_name
        self.stats = ParseStats()
        self._exclusions = tuple(
            normalize_merchant(item) for item in settings.exclude_descriptions if item.strip()
        )
        # Validate the header eagerly so a malformed file fails before any work.
        self._columns = self._read_columns()

    @property
    def dropped_rows(self) -> list[int]:
        return list(self.stats.dropped_rows)

    @property
    def excluded_count(self) -> int:
        return len(self.stats.excluded_rows)

    def __iter__(self) -> Iterator[ParsedTransaction]:
        self.stats = ParseStats()
        reader = csv.reader(io.StringIO(self.text), delimiter=self.settings.delimiter)
        next(reader, None)
        for row_number, row in enumerate(reader, start=2):
            if not any(cell.strip() for cell in row):
                continue
            try:
                record = self._parse_row(row, row_number)
            except ValueError as exc:
                self.stats.dropped_rows.append(row_number)
                if self.logger:
                    self.logger.row_dropped(self.source_name, row_number, exc)
                continue
            if self._is_excluded(record.description):
                self.stats.excluded_rows.append(row_number)
                if self.logger:
                    self.logger.row_excluded(self.source_name, row_number, record.description)
                continue
            yield record

    def _read_columns(self) -> _ColumnMap:
        reader = csv.reader(io.StringIO(self.text), delimiter=self.settings.delimiter)
        header = next(reader, None)
        if not header or not any(cell.strip() for cell in header):
            raise CSVImportError(f"{self.source_name}: CSV must include a header row.")
        positions: dict[str, int] = {}
        for idx, name in enumerate(header):
            positions.setdefault(name.strip().lower(), idx)

        def find(aliases: tuple[str, ...]) -> int | None:
            for alias in aliases:
                if alias in positions:
                    return positions[alias]
            return None

        date_idx = find(DATE_HEADERS)
        amount_idx = find(AMOUNT_HEADERS)
        if date_idx is None or amount_idx is None:
            missing = [
                label
                for label, idx in (("Date", date_idx), ("Amount", amount_idx))
                if idx is None
            ]
            raise CSVImportError(
                f"{self.source_name}: Missing required columns in CSV: " + ", ".join(missing)
            )
        return _ColumnMap(
            date=date_idx,
            amount=amount_idx,
            name=find(NAME_HEADERS),
            description=find(DESCRIPTION_HEADERS),
            category=find(CATEGORY_HEADERS),
            account_name=find(ACCOUNT_NAME_HEADERS),
            account_number=find(ACCOUNT_NUMBER_HEADERS),
            institution_name=find(INSTITUTION_HEADERS),
        )

    def _parse_row(self, row: list[str], row_number: int) -> ParsedTransaction:
        columns = self._columns

        def cell(idx: int | None) -> str:
            if idx is None or idx >= len(row):
                return ""
            return row[idx].strip()

        txn_date = parse_date(cell(columns.date))
        signed_amount = parse_amount(cell(columns.amount))

        name = cell(columns.name)
        description = cell(columns.description)
        merchant_name = name or description
        description = description or name

        if signed_amount < 0:
            txn_type = INCOME if self.settings.negative_is_income else EXPENSE
        else:
            txn_type = EXPENSE if self.settings.negative_is_income else INCOME
        amount = abs(signed_amount)
        account_number = cell(columns.account_number) or None

        return ParsedTransaction(
            row_number=row_number,
            date=txn_date,
            amount=amount,
            type=txn_type,
            description=description,
            merchant_name=merchant_name,
            fingerprint=compute_transaction_fingerprint(
                self.user_id, txn_date, amount, merchant_name, account_number
            ),
            csv_category=cell(columns.category) or None,
            account_name=cell(columns.account_name) or None,
            account_number=account_number,
            institution_name=cell(columns.institution_name) or None,
        )

    def _is_excluded(self, description: str) -> bool:
        if not self._exclusions:
            return False
        normalized = normalize_merchant(description)
        return any(pattern in normalized for pattern in self._exclusions)


def parse_date(raw: str) -> date:
    if not raw:
        raise ValueError("missing date")
    try:
        return date_parser.parse(raw).date()
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"invalid date value: {raw}") from exc


def parse_amount(raw: str) -> float:
    """Parse a signed amount, accepting currency symbols, separators and parentheses."""

    cleaned = raw.strip().replace("$", "").replace(",", "").replace(" ", "")
    if not cleaned:
        raise ValueError("missing amount")
    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]
    try:
        value = float(cleaned)
    except ValueError as exc:
        raise ValueError(f"invalid amount value: {raw}") from exc
    if not math.isfinite(value):
        raise ValueError(f"invalid amount value: {raw}")
    return -abs(value) if negative else value


def filter_by_month(
    records: Iterable[ParsedTransaction], year: int, month: int
) -> Iterator[ParsedTransaction]:
    """Yield only records that fall in the given calendar month."""

    for record in records:
        if record.date.year == year and record.date.month == month:
            yield record


def load_csv_text(path: str | Path | None = None) -> str:
    """Read a CSV export from a file, or from stdin when path is '-' or None."""

    if is_stdin(path):
        return sys.stdin.read()
    file_path = Path(path)
    if not file_path.exists():
        raise CSVImportError(f"CSV file not found: {file_path}")
    try:
        return file_path.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError as exc:
        raise CSVImportError(f"{file_path}: file is not valid UTF-8 ({exc})") from exc
