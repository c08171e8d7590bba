from __future__ import annotations

from pathlib import Path

import pytest

from fin_tracker.shared import paths
from fin_tracker.shared.config import AppConfig, load_config
from fin_tracker.shared.exceptions import ConfigurationError


def _isolated_env(tmp_path: Path, **extra: str) -> dict[str, str]:
    env = {paths.CONFIG_DIR_ENV: str(tmp_path / "config")}
    env.update(extra)
    return env


def test_load_config_defaults(tmp_path: Path) -> None:
    env = _isolated_env(tmp_path)
    cfg = load_config(env=env)
    assert isinstance(cfg, AppConfig)
    assert cfg.database.path == paths.default_database_path(env=env)
    assert cfg.default_user == "default"
    assert cfg.importing.sign_convention == "negative_is_income"
    assert cfg.importing.negative_is_income is True
    assert cfg.importing.delimiter == ","
    assert "CREDIT CARD PAYMENT" in cfg.importing.exclude_descriptions
    assert cfg.categorization.heuristics.enabled is True
    assert cfg.categorization.heuristics.small_amount_threshold == 5.0
    assert cfg.categorization.heuristics.large_amount_threshold == 1000.0
    assert cfg.categorization.rules.max_regex_length == 200
    assert cfg.categorization.advisory.enabled is False


def test_load_config_from_yaml(tmp_path: Path) -> None:
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir()
    cfg_file = cfg_dir / "config.yaml"
    cfg_file.write_text(
        """
        database:
          path: ~/alt.db
        user:
          default_id: household
        import:
          sign_convention: negative_is_expense
          delimiter: ";"
          exclude_descriptions: [AUTOPAY]
        categorization:
          heuristics:
            enabled: false
          advisory:
            enabled: true
            model: gpt-4.1-mini
        """,
        encoding="utf-8",
    )
    cfg = load_config(config_path=cfg_file, env=_isolated_env(tmp_path))
    assert cfg.source_path == cfg_file
    assert cfg.database.path == paths.resolve_path("~/alt.db")
    assert cfg.default_user == "household"
    assert cfg.importing.negative_is_income is False
    assert cfg.importing.delimiter == ";"
    assert cfg.importing.exclude_descriptions == ("AUTOPAY",)
    assert cfg.categorization.heuristics.enabled is False
    assert cfg.categorization.heuristics.small_amount_threshold == 5.0
    assert cfg.categorization.advisory.enabled is True
    assert cfg.categorization.advisory.model == "gpt-4.1-mini"
    assert cfg.categorization.advisory.provider == "openai"


def test_load_config_env_overrides(tmp_path: Path) -> None:
    custom_db = tmp_path / "custom.db"
    env = _isolated_env(
        tmp_path,
        **{
            paths.DATABASE_PATH_ENV: str(custom_db),
            paths.USER_ENV: "alice",
            "FINTRACKER_SIGN_CONVENTION": "negative_is_expense",
            "FINTRACKER_EXCLUDE_DESCRIPTIONS": "AUTOPAY, TRANSFER TO SAVINGS",
            "FINTRACKER_HEURISTICS_ENABLED": "false",
            "FINTRACKER_HEURISTICS_LARGE_AMOUNT": "2500",
            "FINTRACKER_RULES_MAX_REGEX_LENGTH": "50",
        },
    )
    cfg = load_config(env=env)
    assert cfg.database.path == custom_db
    assert cfg.default_user == "alice"
    assert cfg.importing.sign_convention == "negative_is_expense"
    assert cfg.importing.exclude_descriptions == ("AUTOPAY", "TRANSFER TO SAVINGS")
    assert cfg.categorization.heuristics.enabled is False
    assert cfg.categorization.heuristics.large_amount_threshold == 2500.0
    assert cfg.categorization.rules.max_regex_length == 50


def test_with_database_path_returns_copy(tmp_path: Path) -> None:
    cfg = load_config(env=_isolated_env(tmp_path))
    updated = cfg.with_database_path(tmp_path / "other.db")
    assert updated.database.path == tmp_path / "other.db"
    assert cfg.database.path != updated.database.path


def test_load_config_rejects_unknown_sign_convention(tmp_path: Path) -> None:
    env = _isolated_env(tmp_path, FINTRACKER_SIGN_CONVENTION="sideways")
    with pytest.raises(ConfigurationError, match="sign_convention"):
        load_config(env=env)


def test_load_config_rejects_invalid_boolean_override(tmp_path: Path) -> None:
    env = _isolated_env(tmp_path, FINTRACKER_HEURISTICS_ENABLED="maybe")
    with pytest.raises(ConfigurationError, match="FINTRACKER_HEURISTICS_ENABLED"):
        load_config(env=env)


def test_load_config_rejects_invalid_yaml(tmp_path: Path) -> None:
    cfg_file = tmp_path / "broken.yaml"
    cfg_file.write_text("database: [unterminated\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid YAML"):
        load_config(config_path=cfg_file, env=_isolated_env(tmp_path))


def test_load_config_rejects_non_mapping_root(tmp_path: Path) -> None:
    cfg_file = tmp_path / "list.yaml"
    cfg_file.write_text("- one\n- two\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="mapping root"):
        load_config(config_path=cfg_file, env=_isolated_env(tmp_path))
