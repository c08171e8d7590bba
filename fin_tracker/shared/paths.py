"""Filesystem locations used by the fin-tracker CLIs.

Everything lives under one home directory (``~/.fintracker`` by default):
the YAML config, the SQLite database and per-user rule exports. Each location
can be moved with a ``FINTRACKER_*`` environment variable.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Mapping

DEFAULT_CONFIG_DIR = "~/.fintracker"
DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_DATABASE_FILE = "data.db"
RULES_SUBDIR = "rules"

CONFIG_DIR_ENV = "FINTRACKER_CONFIG_DIR"
CONFIG_FILE_ENV = "FINTRACKER_CONFIG_PATH"
DATABASE_PATH_ENV = "FINTRACKER_DATABASE_PATH"
USER_ENV = "FINTRACKER_USER"

# Command-line placeholder for standard input.
STDIN_PATH = "-"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _expand(path_str: str) -> Path:
    return Path(os.path.expandvars(path_str)).expanduser()


def _from_env(env: Mapping[str, str] | None, key: str) -> Path | None:
    value = (env or os.environ).get(key, "").strip()
    return _expand(value) if value else None


def _prepare(path: Path, *, create_parents: bool) -> Path:
    if create_parents:
        path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_config_dir(create: bool = False, env: Mapping[str, str] | None = None) -> Path:
    """Return the fin-tracker home directory, optionally creating it."""
    path = _from_env(env, CONFIG_DIR_ENV) or _expand(DEFAULT_CONFIG_DIR)
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


def default_config_path(create_parents: bool = False, env: Mapping[str, str] | None = None) -> Path:
    """Return the config file; ``FINTRACKER_CONFIG_PATH`` wins over the home directory."""
    override = _from_env(env, CONFIG_FILE_ENV)
    path = override or get_config_dir(env=env) / DEFAULT_CONFIG_FILE
    return _prepare(path, create_parents=create_parents)


def default_database_path(create_parents: bool = False, env: Mapping[str, str] | None = None) -> Path:
    """Return the SQLite database file shared by every user of this install."""
    override = _from_env(env, DATABASE_PATH_ENV)
    path = override or get_config_dir(env=env) / DEFAULT_DATABASE_FILE
    return _prepare(path, create_parents=create_parents)


def default_rules_path(
    user_id: str,
    create_parents: bool = False,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Return where ``fin-rules export``/``import`` keep a user's rule set by default."""
    stem = _UNSAFE_FILENAME_CHARS.sub("_", user_id.strip()).strip("._") or "default"
    path = get_config_dir(env=env) / RULES_SUBDIR / f"{stem}.yaml"
    return _prepare(path, create_parents=create_parents)


def is_stdin(path: str | Path | None) -> bool:
    return path is None or str(path) == STDIN_PATH


def resolve_path(path_str: str | Path) -> Path:
    """Expand user and environment variables for arbitrary paths."""
    return _expand(str(path_str))
