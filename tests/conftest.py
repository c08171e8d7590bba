"""Shared pytest fixtures.

Every test gets its own migrated SQLite database under tmp_path, built through
the same migration runner the CLIs use.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest

from fin_tracker.shared import paths
from fin_tracker.shared.config import AppConfig, load_config
from fin_tracker.shared.database import connect, run_migrations
from fin_tracker.shared.logging import Logger, get_logger

USER_ID = "user-1"


@pytest.fixture()
def user_id() -> str:
    return USER_ID


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "fin-tracker.db"


@pytest.fixture()
def app_config(db_path: Path) -> AppConfig:
    """Return an AppConfig backed by a temp SQLite database with migrations applied."""

    config = load_config(env={paths.DATABASE_PATH_ENV: str(db_path)})
    run_migrations(config)
    return config


@pytest.fixture()
def connection(app_config: AppConfig) -> Iterator[sqlite3.Connection]:
    with connect(app_config) as conn:
        yield conn


@pytest.fixture()
def logger() -> Logger:
    return get_logger(verbose=False)


@pytest.fixture()
def cli_env(db_path: Path, tmp_path: Path) -> dict[str, str]:
    """Environment isolating CLI runs from the developer's real config."""

    return {
        paths.DATABASE_PATH_ENV: str(db_path),
        paths.CONFIG_DIR_ENV: str(tmp_path / "config"),
        paths.USER_ENV: USER_ID,
    }