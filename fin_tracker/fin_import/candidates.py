"""Candidate file helpers for fin-import.

A preview can be written to JSON, edited by hand (category or income source
per row) and committed later with ``fin-import --candidates``. A changed
``category_name`` or ``income_source_name`` wins over the id written beside it.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from fin_tracker.shared.exceptions import CandidateFileError
from fin_tracker.shared.models import TRANSACTION_TYPES

from .categorizer.advisory import CategorySuggestion
from .pipeline import CommitResult, ImportCandidate, ImportPreview

CANDIDATE_FILE_VERSION = "1.0"


def candidate_to_dict(candidate: ImportCandidate) -> dict[str, Any]:
    return {
        "index": candidate.index,
        "row_number": candidate.row_number,
        "date": candidate.date.isoformat(),
        "amount": round(candidate.amount, 2),
        "type": candidate.type,
        "description": candidate.description,
        "merchant_name": candidate.merchant_name,
        "is_duplicate": candidate.is_duplicate,
        "fingerprint": candidate.fingerprint,
        "category_id": candidate.category_id,
        "category_name": candidate.category_name,
        "income_source_id": candidate.income_source_id,
        "income_source_name": candidate.income_source_name,
        "method": candidate.method,
        "rule_used": candidate.rule_used,
        "confidence": candidate.confidence,
        "suggestion": candidate.suggestion.to_dict() if candidate.suggestion else None,
        "csv_category": candidate.csv_category,
        "account_name": candidate.account_name,
        "account_number": candidate.account_number,
        "institution_name": candidate.institution_name,
    }


def preview_to_payload(preview: ImportPreview) -> dict[str, Any]:
    return {
        "version": CANDIDATE_FILE_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "year": preview.year,
        "month": preview.month,
        "summary": {
            "total": len(preview.candidates),
            "new": preview.new_count,
            "duplicates": preview.duplicate_count,
            "categorized": preview.categorized_count,
            "dropped_rows": preview.dropped_rows,
            "excluded": preview.excluded_count,
        },
        "candidates": [candidate_to_dict(candidate) for candidate in preview.candidates],
    }


def commit_result_to_payload(result: CommitResult) -> dict[str, Any]:
    return asdict(result)


def write_candidates_file(path: Path, preview: ImportPreview) -> None:
    """Serialize preview candidates to JSON for editing."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(preview_to_payload(preview), indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )


def load_candidates_file(path: Path) -> list[ImportCandidate]:
    """Read a (possibly edited) candidate file back into candidates."""

    if not path.exists():
        raise CandidateFileError(f"Candidates file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CandidateFileError(f"Invalid candidates JSON: {exc}") from exc
    if not isinstance(data, Mapping):
        raise CandidateFileError("Candidates file must contain a JSON object.")
    version = str(data.get("version", ""))
    if version != CANDIDATE_FILE_VERSION:
        raise CandidateFileError(f"Unsupported candidates file version '{version}'.")
    entries = data.get("candidates")
    if not isinstance(entries, list):
        raise CandidateFileError("Candidates file must contain a 'candidates' list.")
    return [candidate_from_dict(entry, position) for position, entry in enumerate(entries)]


def candidate_from_dict(entry: Any, position: int = 0) -> ImportCandidate:
    if not isinstance(entry, Mapping):
        raise CandidateFileError(f"Candidate #{position} is not an object.")
    try:
        txn_date = date.fromisoformat(str(entry["date"]))
        amount = abs(float(entry["amount"]))
        txn_type = str(entry["type"])
        description = str(entry.get("description") or "")
        confidence = float(entry["confidence"]) if entry.get("confidence") is not None else None
    except (KeyError, TypeError, ValueError) as exc:
        raise CandidateFileError(f"Candidate #{position} is malformed: {exc}") from exc
    if txn_type not in TRANSACTION_TYPES:
        raise CandidateFileError(f"Candidate #{position} has invalid type '{txn_type}'.")
    index = _optional_int(entry.get("index"), position)
    merchant_name = _optional_str(entry.get("merchant_name"))
    if not description and not merchant_name:
        raise CandidateFileError(f"Candidate #{position} needs a description or merchant name.")

    suggestion = None
    raw_suggestion = entry.get("suggestion")
    if isinstance(raw_suggestion, Mapping) and raw_suggestion.get("category_name"):
        try:
            suggestion_confidence = float(raw_suggestion.get("confidence") or 0.0)
        except (TypeError, ValueError):
            suggestion_confidence = 0.0
        suggestion = CategorySuggestion(
            category_name=str(raw_suggestion["category_name"]),
            confidence=suggestion_confidence,
            rationale=_optional_str(raw_suggestion.get("rationale")),
        )

    return ImportCandidate(
        index=position if index is None else index,
        date=txn_date,
        amount=amount,
        type=txn_type,
        description=description or (merchant_name or ""),
        fingerprint=str(entry.get("fingerprint") or ""),
        merchant_name=merchant_name,
        is_duplicate=bool(entry.get("is_duplicate", False)),
        category_id=_optional_int(entry.get("category_id"), position),
        category_name=_optional_str(entry.get("category_name")),
        income_source_id=_optional_int(entry.get("income_source_id"), position),
        income_source_name=_optional_str(entry.get("income_source_name")),
        method=_optional_str(entry.get("method")),
        rule_used=_optional_str(entry.get("rule_used")),
        confidence=confidence,
        suggestion=suggestion,
        csv_category=_optional_str(entry.get("csv_category")),
        account_name=_optional_str(entry.get("account_name")),
        account_number=_optional_str(entry.get("account_number")),
        institution_name=_optional_str(entry.get("institution_name")),
        row_number=_optional_int(entry.get("row_number"), position),
    )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any, position: int) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise CandidateFileError(f"Candidate #{position} has a non-integer id '{value}'.") from exc
