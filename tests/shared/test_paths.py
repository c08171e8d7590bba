from __future__ import annotations

from pathlib import Path

from fin_tracker.shared import paths


def test_get_config_dir_uses_env_override(tmp_path: Path) -> None:
    env = {paths.CONFIG_DIR_ENV: str(tmp_path / "config")}
    result = paths.get_config_dir(create=True, env=env)
    assert result == tmp_path / "config"
    assert result.exists()


def test_default_config_path_prefers_file_override(tmp_path: Path) -> None:
    env = {
        paths.CONFIG_DIR_ENV: str(tmp_path / "config"),
        paths.CONFIG_FILE_ENV: str(tmp_path / "elsewhere" / "custom.yaml"),
    }
    assert paths.default_config_path(env=env) == tmp_path / "elsewhere" / "custom.yaml"


def test_default_config_path_lives_in_config_dir(tmp_path: Path) -> None:
    env = {paths.CONFIG_DIR_ENV: str(tmp_path / "config")}
    assert paths.default_config_path(env=env) == tmp_path / "config" / "config.yaml"


def test_default_database_path_uses_override(tmp_path: Path) -> None:
    db_path = tmp_path / "data" / "custom.db"
    env = {paths.DATABASE_PATH_ENV: str(db_path)}
    resolved = paths.default_database_path(create_parents=True, env=env)
    assert resolved == db_path
    assert resolved.parent.exists()


def test_resolve_path_expands_user(tmp_path: Path, monkeypatch) -> None:
    fake_home = tmp_path / "home"
    fake_home.mkdir()
    monkeypatch.setenv("HOME", str(fake_home))
    result = paths.resolve_path("~/file.txt")
    assert result == fake_home / "file.txt"


def test_database_defaults_to_config_dir(tmp_path: Path) -> None:
    env = {paths.CONFIG_DIR_ENV: str(tmp_path / "home")}
    assert paths.default_database_path(env=env) == tmp_path / "home" / "data.db"


def test_blank_override_falls_back_to_config_dir(tmp_path: Path) -> None:
    env = {paths.CONFIG_DIR_ENV: str(tmp_path / "home"), paths.DATABASE_PATH_ENV: "  "}
    assert paths.default_database_path(env=env) == tmp_path / "home" / "data.db"


def test_default_rules_path_is_per_user(tmp_path: Path) -> None:
    env = {paths.CONFIG_DIR_ENV: str(tmp_path / "home")}
    rules_path = paths.default_rules_path("alice@example.com", create_parents=True, env=env)
    assert rules_path == tmp_path / "home" / "rules" / "alice_example.com.yaml"
    assert rules_path.parent.is_dir()
    assert paths.default_rules_path("../..", env=env).name == "default.yaml"


def test_is_stdin() -> None:
    assert paths.is_stdin("-")
    assert paths.is_stdin(None)
    assert not paths.is_stdin("export.csv")
