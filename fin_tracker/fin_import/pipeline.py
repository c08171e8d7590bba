"""Two-phase import pipeline: preview, then commit."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from fin_tracker.shared import models
from fin_tracker.shared.config import AppConfig
from fin_tracker.shared.database import atomic
from fin_tracker.shared.exceptions import (
    AdvisoryUnavailableError,
    CategorizationError,
    EmptyImportError,
    FinTrackerError,
)
from fin_tracker.shared.logging import Logger
from fin_tracker.shared.merchants import is_sentinel_category

from .categorizer.advisory import CategorySuggestion, SuggestionFunction, request_suggestion
from .categorizer.learner import learn_rule
from .categorizer.resolver import CategoryResolver, Resolution
from .categorizer.rules import RuleStore
from .importer import CSVTransactionSource, ParsedTransaction, filter_by_month

PROGRESS_EVERY = 500


class ImportState(str, Enum):
    UPLOADED = "uploaded"
    PARSED = "parsed"
    DEDUP_CHECKED = "dedup_checked"
    CATEGORIZED = "categorized"
    PREVIEWED = "previewed"
    COMMITTED = "committed"


@dataclass(slots=True)
class ImportCandidate:
    """A previewed row, possibly edited by the user before commit."""

    index: int
    date: date
    amount: float
    type: str
    description: str
    fingerprint: str
    merchant_name: str | None = None
    is_duplicate: bool = False
    category_id: int | None = None
    category_name: str | None = None
    income_source_id: int | None = None
    income_source_name: str | None = None
    method: str | None = None
    rule_used: str | None = None
    confidence: float | None = None
    suggestion: CategorySuggestion | None = None
    csv_category: str | None = None
    account_name: str | None = None
    account_number: str | None = None
    institution_name: str | None = None
    row_number: int | None = None

    @classmethod
    def from_record(
        cls,
        index: int,
        record: ParsedTransaction,
        resolution: Resolution,
        *,
        is_duplicate: bool = False,
    ) -> ImportCandidate:
        return cls(
            index=index,
            date=record.date,
            amount=record.amount,
            type=record.type,
            description=record.description,
            fingerprint=record.fingerprint,
            merchant_name=record.merchant_name or None,
            is_duplicate=is_duplicate,
            category_id=resolution.category_id,
            category_name=resolution.category_name,
            income_source_id=resolution.income_source_id,
            income_source_name=resolution.income_source_name,
            method=resolution.method,
            rule_used=resolution.rule_used,
            confidence=resolution.confidence if resolution.resolved else None,
            csv_category=record.csv_category,
            account_name=record.account_name,
            account_number=record.account_number,
            institution_name=record.institution_name,
            row_number=record.row_number,
        )

    @property
    def merchant_text(self) -> str:
        return self.merchant_name or self.description

    def compute_fingerprint(self, user_id: str) -> str:
        return models.compute_transaction_fingerprint(
            user_id, self.date, self.amount, self.merchant_text, self.account_number
        )

    def to_transaction(
        self,
        user_id: str,
        *,
        category_id: int | None,
        income_source_id: int | None,
    ) -> models.Transaction:
        """Build the row to persist with the final assignment settled at commit."""
        return models.Transaction(
            user_id=user_id,
            date=self.date,
            amount=self.amount,
            type=self.type,
            description=self.description,
            merchant_name=self.merchant_name,
            expense_category_id=category_id,
            income_source_id=income_source_id,
            fingerprint=self.compute_fingerprint(user_id),
            csv_category=self.csv_category,
            account_name=self.account_name,
            account_number=self.account_number,
            institution_name=self.institution_name,
        )


@dataclass(slots=True)
class ImportPreview:
    year: int
    month: int
    candidates: list[ImportCandidate]
    dropped_rows: list[int] = field(default_factory=list)
    excluded_count: int = 0

    @property
    def duplicate_count(self) -> int:
        return sum(1 for candidate in self.candidates if candidate.is_duplicate)

    @property
    def new_count(self) -> int:
        return len(self.candidates) - self.duplicate_count

    @property
    def categorized_count(self) -> int:
        return sum(
            1
            for candidate in self.candidates
            if candidate.category_id or candidate.category_name or candidate.income_source_id
        )


@dataclass(slots=True)
class RowError:
    index: int
    fingerprint: str | None
    message: str


@dataclass(slots=True)
class CommitResult:
    imported_count: int = 0
    skipped_duplicate_count: int = 0
    total_candidates: int = 0
    errors: list[RowError] = field(default_factory=list)
    created_categories: list[str] = field(default_factory=list)


class ImportOrchestrator:
    """Drive a CSV export through parsing, dedup, categorization and persistence.

    ``preview`` never writes. ``commit`` persists row by row: each row runs in
    its own savepoint and is committed before the next, so a failing row is
    recorded and the rest of the batch continues.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        user_id: str,
        *,
        config: AppConfig,
        logger: Logger,
        advisor: SuggestionFunction | None = None,
    ) -> None:
        self.connection = connection
        self.user_id = user_id
        self.config = config
        self.logger = logger
        self.advisor = advisor
        self.store = RuleStore(connection, settings=config.categorization.rules)
        self.resolver = CategoryResolver(
            connection,
            user_id,
            settings=config.categorization,
            logger=logger,
        )
        self.state = ImportState.UPLOADED

    def _advance(self, state: ImportState) -> None:
        self.state = state
        self.logger.debug(f"Import state -> {state.value}")

    def parse(self, text: str, year: int, month: int) -> tuple[CSVTransactionSource, list[ParsedTransaction]]:
        """Parse the export and keep only rows in the target month."""

        self._advance(ImportState.UPLOADED)
        source = CSVTransactionSource(
            text,
            self.user_id,
            settings=self.config.importing,
            logger=self.logger,
        )
        records = list(filter_by_month(source, year, month))
        self._advance(ImportState.PARSED)
        self.logger.dropped_rows(source.dropped_rows)
        self.logger.excluded_rows(source.excluded_count)
        if not records:
            raise EmptyImportError(f"No valid transactions found for {year:04d}-{month:02d}.")
        self.logger.info(f"Parsed {len(records)} transaction(s) for {year:04d}-{month:02d}.")
        return source, records

    def preview(self, text: str, year: int, month: int, *, suggest: bool = False) -> ImportPreview:
        source, records = self.parse(text, year, month)

        duplicate_flags = self._check_duplicates(records)
        self._advance(ImportState.DEDUP_CHECKED)

        candidates = [
            ImportCandidate.from_record(
                index,
                record,
                self.resolver.resolve(record),
                is_duplicate=is_duplicate,
            )
            for index, (record, is_duplicate) in enumerate(zip(records, duplicate_flags, strict=True))
        ]
        self._advance(ImportState.CATEGORIZED)

        if suggest:
            self._attach_suggestions(candidates)
        self._advance(ImportState.PREVIEWED)

        preview = ImportPreview(
            year=year,
            month=month,
            candidates=candidates,
            dropped_rows=source.dropped_rows,
            excluded_count=source.excluded_count,
        )
        self.logger.info(
            f"Preview ready: {preview.new_count} new, {preview.duplicate_count} duplicate, "
            f"{preview.categorized_count} categorized."
        )
        return preview

    def commit_text(self, text: str, year: int, month: int) -> CommitResult:
        """Parse a fresh export and commit it without a separate preview."""

        _, records = self.parse(text, year, month)
        return self.commit(self._resolve_lazily(records))

    def commit(self, candidates: Iterable[ImportCandidate]) -> CommitResult:
        result = CommitResult()
        for candidate in candidates:
            result.total_candidates += 1
            try:
                inserted = self._commit_row(candidate, result)
            except (FinTrackerError, sqlite3.Error, ValueError) as exc:
                result.errors.append(
                    RowError(index=candidate.index, fingerprint=candidate.fingerprint, message=str(exc))
                )
                self.logger.row_failed(candidate.index, str(exc))
                continue
            self.connection.commit()
            if inserted:
                result.imported_count += 1
            else:
                result.skipped_duplicate_count += 1
            if result.total_candidates % PROGRESS_EVERY == 0:
                self.logger.commit_progress(result.total_candidates)

        if result.total_candidates == 0:
            raise EmptyImportError("No candidates to commit.")
        self._advance(ImportState.COMMITTED)
        self.logger.info(
            f"Imported {result.imported_count}, skipped {result.skipped_duplicate_count} duplicate(s), "
            f"{len(result.errors)} error(s)."
        )
        return result

    def _resolve_lazily(self, records: Sequence[ParsedTransaction]) -> Iterator[ImportCandidate]:
        # Resolve each row just before it is committed so rules learned from
        # earlier rows apply to later ones.
        for index, record in enumerate(records):
            yield ImportCandidate.from_record(index, record, self.resolver.resolve(record))

    def _check_duplicates(self, records: Sequence[ParsedTransaction]) -> list[bool]:
        seen: set[str] = set()
        flags: list[bool] = []
        for record in records:
            duplicate = record.fingerprint in seen or models.transaction_exists(
                self.connection, self.user_id, record.fingerprint
            )
            seen.add(record.fingerprint)
            flags.append(duplicate)
        return flags

    def _commit_row(self, candidate: ImportCandidate, result: CommitResult) -> bool:
        # The fingerprint is recomputed so an edited or stale candidate cannot
        # smuggle in a mismatched dedup key.
        candidate.fingerprint = candidate.compute_fingerprint(self.user_id)
        if models.transaction_exists(self.connection, self.user_id, candidate.fingerprint):
            return False
        with atomic(self.connection):
            category_id, income_source_id = self._final_assignment(candidate, result)
            transaction = candidate.to_transaction(
                self.user_id, category_id=category_id, income_source_id=income_source_id
            )
            if models.insert_transaction(self.connection, transaction) is None:
                return False
            learn_rule(
                self.store,
                self.user_id,
                candidate.merchant_text,
                category_id=category_id,
                income_source_id=income_source_id,
                logger=self.logger,
            )
        return True

    def _final_assignment(
        self, candidate: ImportCandidate, result: CommitResult
    ) -> tuple[int | None, int | None]:
        if candidate.type == models.EXPENSE:
            return self._final_category(candidate, result), None
        if candidate.type == models.INCOME:
            return None, self._final_income_source(candidate)
        raise CategorizationError(f"Unknown transaction type '{candidate.type}'.")

    def _final_category(self, candidate: ImportCandidate, result: CommitResult) -> int | None:
        if candidate.category_id is not None:
            category = models.find_expense_category(
                self.connection, self.user_id, category_id=candidate.category_id
            )
            if category is None:
                raise CategorizationError(f"Category id {candidate.category_id} does not exist.")
            if not _renamed(candidate.category_name, category.name):
                if is_sentinel_category(category.name):
                    raise CategorizationError(
                        f"Cannot assign the placeholder category '{category.name}'."
                    )
                return category.id
            self.logger.debug(f"Row {candidate.index}: category renamed to '{candidate.category_name}'.")
        if not candidate.category_name:
            return None
        if is_sentinel_category(candidate.category_name):
            raise CategorizationError(
                f"Cannot assign the placeholder category '{candidate.category_name}'."
            )
        existing = models.find_expense_category(
            self.connection, self.user_id, name=candidate.category_name
        )
        if existing is not None:
            return existing.id
        created = models.create_expense_category(
            self.connection, self.user_id, candidate.category_name
        )
        result.created_categories.append(created.name)
        self.logger.info(f"Created category '{created.name}' ({created.category_type}).")
        return created.id

    def _final_income_source(self, candidate: ImportCandidate) -> int | None:
        if candidate.income_source_id is not None:
            source = models.find_income_source(
                self.connection, self.user_id, source_id=candidate.income_source_id
            )
            if source is None:
                raise CategorizationError(
                    f"Income source id {candidate.income_source_id} does not exist."
                )
            if not _renamed(candidate.income_source_name, source.name):
                return source.id
        if not candidate.income_source_name:
            return None
        return models.get_or_create_income_source(
            self.connection, self.user_id, candidate.income_source_name
        ).id

    def _attach_suggestions(self, candidates: Sequence[ImportCandidate]) -> None:
        if self.advisor is None:
            self.logger.info("Advisory suggestions are not configured; skipping.")
            return
        names = [
            category.name
            for category in models.fetch_expense_categories(self.connection, self.user_id)
            if not is_sentinel_category(category.name)
        ]
        for candidate in candidates:
            if candidate.type != models.EXPENSE or candidate.category_id or candidate.category_name:
                continue
            try:
                candidate.suggestion = request_suggestion(
                    self.advisor,
                    candidate.merchant_text,
                    candidate.description,
                    candidate.amount,
                    names,
                )
            except AdvisoryUnavailableError as exc:
                self.logger.debug(f"No suggestion for row {candidate.index}: {exc}")


def _renamed(edited_name: str | None, stored_name: str) -> bool:
    """True when a candidate's name no longer matches the record behind its id.

    Names are the editable field in candidate files, so a changed name wins
    over a stale id.
    """
    return bool(edited_name) and edited_name.strip().casefold() != stored_name.strip().casefold()


__all__ = [
    "CommitResult",
    "ImportCandidate",
    "ImportOrchestrator",
    "ImportPreview",
    "ImportState",
    "RowError",
]
