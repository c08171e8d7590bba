"""Project-wide custom exceptions."""

from __future__ import annotations

from enum import Enum


class FinTrackerError(Exception):
    """Base exception for the fin-tracker suite."""


class ConfigurationError(FinTrackerError):
    """Raised when configuration loading or validation fails."""


class DatabaseError(FinTrackerError):
    """Raised for database-related issues."""


class CSVImportError(FinTrackerError):
    """Raised when a CSV export cannot be parsed at all."""


class EmptyImportError(CSVImportError):
    """Raised when the target period yields no valid rows."""


class CandidateFileError(FinTrackerError):
    """Raised when a candidate file cannot be read or applied."""


class CategorizationError(FinTrackerError):
    """Raised when transaction categorization fails."""


class RuleRejection(str, Enum):
    """Reason codes attached to RuleValidationError."""

    EMPTY_PATTERN = "empty_pattern"
    INVALID_MATCH_TYPE = "invalid_match_type"
    INVALID_APPLIES_TO = "invalid_applies_to"
    IDENTIFIER_PATTERN = "identifier_pattern"
    SENTINEL_TARGET = "sentinel_target"
    INVALID_REGEX = "invalid_regex"
    UNSAFE_REGEX = "unsafe_regex"
    MISSING_TARGET = "missing_target"
    TARGET_MISMATCH = "target_mismatch"
    UNKNOWN_TARGET = "unknown_target"


class RuleValidationError(CategorizationError):
    """Raised when a rule is rejected on create or update."""

    def __init__(self, reason: RuleRejection, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class AdvisoryUnavailableError(CategorizationError):
    """Raised when an advisory suggestion was requested but cannot be produced."""
