"""Configuration loading utilities for fin-tracker."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, MutableMapping

import yaml

from . import paths
from .exceptions import ConfigurationError

SIGN_CONVENTIONS = ("negative_is_income", "negative_is_expense")


@dataclass(frozen=True, slots=True)
class DatabaseSettings:
    """Database-related configuration."""

    path: Path


@dataclass(frozen=True, slots=True)
class ImportSettings:
    """CSV import behaviour for a single export source."""

    sign_convention: str  # "negative_is_income" or "negative_is_expense"
    delimiter: str
    exclude_descriptions: tuple[str, ...]

    @property
    def negative_is_income(self) -> bool:
        return self.sign_convention == "negative_is_income"


@dataclass(frozen=True, slots=True)
class HeuristicSettings:
    """Fallback classifier thresholds."""

    enabled: bool
    small_amount_threshold: float
    large_amount_threshold: float


@dataclass(frozen=True, slots=True)
class RuleSettings:
    """Guards applied to user-supplied rule patterns."""

    max_regex_length: int
    max_match_text_length: int


@dataclass(frozen=True, slots=True)
class AdvisorySettings:
    """Optional advisory suggestion provider configuration."""

    enabled: bool
    provider: str
    model: str
    api_key_env: str


@dataclass(frozen=True, slots=True)
class CategorizationSettings:
    """Composite categorization configuration."""

    heuristics: HeuristicSettings
    rules: RuleSettings
    advisory: AdvisorySettings


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Top-level application configuration."""

    source_path: Path
    database: DatabaseSettings
    importing: ImportSettings
    categorization: CategorizationSettings
    default_user: str

    def with_database_path(self, new_path: str | Path) -> AppConfig:
        """Return a copy with an updated database path."""
        resolved = paths.resolve_path(new_path)
        new_db = replace(self.database, path=resolved)
        return replace(self, database=new_db)


def _default_config(env: Mapping[str, str]) -> dict[str, Any]:
    return {
        "database": {"path": str(paths.default_database_path(env=env))},
        "user": {"default_id": "default"},
        "import": {
            "sign_convention": "negative_is_income",
            "delimiter": ",",
            "exclude_descriptions": [
                "PAYMENT THANK YOU-MOBILE",
                "CREDIT CARD PAYMENT",
                "PAYMENT TO CHASE CARD ENDING",
                "AMERICAN EXPRESS ACH PMT",
            ],
        },
        "categorization": {
            "heuristics": {
                "enabled": True,
                "small_amount_threshold": 5.0,
                "large_amount_threshold": 1000.0,
            },
            "rules": {
                "max_regex_length": 200,
                "max_match_text_length": 256,
            },
            "advisory": {
                "enabled": False,
                "provider": "openai",
                "model": "gpt-4o-mini",
                "api_key_env": "OPENAI_API_KEY",
            },
        },
    }


ENV_OVERRIDE_SPEC: dict[str, tuple[str, type]] = {
    "database.path": (paths.DATABASE_PATH_ENV, str),
    "user.default_id": (paths.USER_ENV, str),
    "import.sign_convention": ("FINTRACKER_SIGN_CONVENTION", str),
    "import.delimiter": ("FINTRACKER_CSV_DELIMITER", str),
    "import.exclude_descriptions": ("FINTRACKER_EXCLUDE_DESCRIPTIONS", list),
    "categorization.heuristics.enabled": ("FINTRACKER_HEURISTICS_ENABLED", bool),
    "categorization.heuristics.small_amount_threshold": (
        "FINTRACKER_HEURISTICS_SMALL_AMOUNT",
        float,
    ),
    "categorization.heuristics.large_amount_threshold": (
        "FINTRACKER_HEURISTICS_LARGE_AMOUNT",
        float,
    ),
    "categorization.rules.max_regex_length": ("FINTRACKER_RULES_MAX_REGEX_LENGTH", int),
    "categorization.rules.max_match_text_length": ("FINTRACKER_RULES_MAX_MATCH_TEXT", int),
    "categorization.advisory.enabled": ("FINTRACKER_ADVISORY_ENABLED", bool),
    "categorization.advisory.provider": ("FINTRACKER_ADVISORY_PROVIDER", str),
    "categorization.advisory.model": ("FINTRACKER_ADVISORY_MODEL", str),
    "categorization.advisory.api_key_env": ("FINTRACKER_ADVISORY_API_KEY_ENV", str),
}


def load_config(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load configuration from defaults, YAML file, and env overrides."""
    env = dict(env or os.environ)
    resolved_config_path = _resolve_config_path(config_path, env)
    file_data = _load_yaml(resolved_config_path)
    defaults = _default_config(env)
    merged: dict[str, Any] = _deep_merge(defaults, file_data)
    merged = _apply_env_overrides(merged, env)
    return _build_config(merged, resolved_config_path)


def _resolve_config_path(
    config_path: str | Path | None, env: Mapping[str, str]
) -> Path:
    if config_path:
        return paths.resolve_path(config_path)
    return paths.default_config_path(env=env)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file at {path} is not valid YAML: {exc}") from exc
        if not isinstance(data, MutableMapping):
            raise ConfigurationError(f"Config file at {path} must define a mapping root object.")
        return dict(data)


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], Mapping) and isinstance(value, Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    config_copy = _deep_merge(config, {})
    for dotted_key, (env_key, expected_type) in ENV_OVERRIDE_SPEC.items():
        if env_key not in env:
            continue
        raw_value = env[env_key]
        try:
            value = _coerce_env_value(raw_value, expected_type)
        except ValueError as exc:
            raise ConfigurationError(
                f"Environment override {env_key} has invalid value '{raw_value}': {exc}"
            ) from exc
        _assign_nested(config_copy, dotted_key.split("."), value)
    return config_copy


def _coerce_env_value(raw: str, expected_type: type) -> Any:
    cleaned = raw.strip()
    if expected_type is bool:
        lowered = cleaned.lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError("expected boolean (true/false)")
    if expected_type is int:
        return int(cleaned)
    if expected_type is float:
        return float(cleaned)
    if expected_type is list:
        if not cleaned:
            return []
        return tuple(part.strip() for part in cleaned.split(",") if part.strip())
    if expected_type is str and raw and not cleaned:
        # Keep whitespace-only values such as a tab delimiter.
        return raw
    return cleaned


def _assign_nested(target: MutableMapping[str, Any], keys: list[str], value: Any) -> None:
    current = target
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], MutableMapping):
            current[key] = {}
        current = current[key]  # type: ignore[assignment]
    current[keys[-1]] = value


def _build_config(data: Mapping[str, Any], source_path: Path) -> AppConfig:
    try:
        database = DatabaseSettings(path=paths.resolve_path(data["database"]["path"]))
        import_cfg = data["import"]
        importing = ImportSettings(
            sign_convention=str(import_cfg["sign_convention"]),
            delimiter=str(import_cfg["delimiter"]),
            exclude_descriptions=tuple(
                str(item) for item in (import_cfg.get("exclude_descriptions") or ())
            ),
        )
        heur_cfg = data["categorization"]["heuristics"]
        heuristics = HeuristicSettings(
            enabled=bool(heur_cfg["enabled"]),
            small_amount_threshold=float(heur_cfg["small_amount_threshold"]),
            large_amount_threshold=float(heur_cfg["large_amount_threshold"]),
        )
        rules_cfg = data["categorization"]["rules"]
        rules = RuleSettings(
            max_regex_length=int(rules_cfg["max_regex_length"]),
            max_match_text_length=int(rules_cfg["max_match_text_length"]),
        )
        adv_cfg = data["categorization"]["advisory"]
        advisory = AdvisorySettings(
            enabled=bool(adv_cfg["enabled"]),
            provider=str(adv_cfg["provider"]),
            model=str(adv_cfg["model"]),
            api_key_env=str(adv_cfg["api_key_env"]),
        )
        default_user = str(data["user"]["default_id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration structure: {exc}") from exc

    if importing.sign_convention not in SIGN_CONVENTIONS:
        raise ConfigurationError(
            f"import.sign_convention must be one of {', '.join(SIGN_CONVENTIONS)}; "
            f"got '{importing.sign_convention}'."
        )
    if len(importing.delimiter) != 1:
        raise ConfigurationError("import.delimiter must be a single character.")
    if not default_user.strip():
        raise ConfigurationError("user.default_id cannot be empty.")

    return AppConfig(
        source_path=source_path,
        database=database,
        importing=importing,
        categorization=CategorizationSettings(
            heuristics=heuristics,
            rules=rules,
            advisory=advisory,
        ),
        default_user=default_user,
    )
