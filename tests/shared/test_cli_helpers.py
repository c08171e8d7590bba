from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import click
import pytest
from click.testing import CliRunner

from fin_tracker.shared.cli import CLIContext, common_cli_options, handle_cli_errors
from fin_tracker.shared.exceptions import (
    ConfigurationError,
    FinTrackerError,
    RuleRejection,
    RuleValidationError,
)


class DummyAppConfig:
    def __init__(self, path: Path, default_user: str = "default") -> None:
        self.database = SimpleNamespace(path=path)
        self.default_user = default_user

    def with_database_path(self, new_path: str | Path) -> DummyAppConfig:
        return DummyAppConfig(Path(new_path), self.default_user)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _stub_config(tmp_path: Path) -> DummyAppConfig:
    return DummyAppConfig(tmp_path / "db.sqlite")


def test_common_cli_options_runs_migrations_by_default(
    monkeypatch: pytest.MonkeyPatch, runner: CliRunner, tmp_path: Path
) -> None:
    recorded: dict[str, Path] = {}

    monkeypatch.setattr(
        "fin_tracker.shared.cli.load_config", lambda config_path: _stub_config(tmp_path)
    )

    def fake_run_migrations(app_config: DummyAppConfig) -> None:  # type: ignore[override]
        recorded["migrations_db"] = app_config.database.path

    monkeypatch.setattr("fin_tracker.shared.cli.run_migrations", fake_run_migrations)

    @click.command()
    @common_cli_options
    def sample(cli_ctx: CLIContext) -> None:
        click.echo(f"dry={cli_ctx.dry_run} user={cli_ctx.user_id}")

    result = runner.invoke(sample, [], env={"FINTRACKER_USER": None})

    assert result.exit_code == 0, result.output
    assert "dry=False" in result.output
    assert "user=default" in result.output
    assert recorded["migrations_db"].name == "db.sqlite"


def test_common_cli_options_respects_dry_run(
    monkeypatch: pytest.MonkeyPatch, runner: CliRunner, tmp_path: Path
) -> None:
    monkeypatch.setattr(
        "fin_tracker.shared.cli.load_config", lambda config_path: _stub_config(tmp_path)
    )

    migrations_called = False

    def fake_run_migrations(app_config: DummyAppConfig) -> None:  # type: ignore[override]
        nonlocal migrations_called
        migrations_called = True

    monkeypatch.setattr("fin_tracker.shared.cli.run_migrations", fake_run_migrations)

    @click.command()
    @common_cli_options
    def sample(cli_ctx: CLIContext) -> None:
        click.echo(f"dry={cli_ctx.dry_run}")

    result = runner.invoke(sample, ["--dry-run"])

    assert result.exit_code == 0, result.output
    assert "dry=True" in result.output
    assert migrations_called is False


def test_common_cli_options_applies_db_override(
    monkeypatch: pytest.MonkeyPatch, runner: CliRunner, tmp_path: Path
) -> None:
    base_config = DummyAppConfig(tmp_path / "original.sqlite")

    def fake_load_config(config_path: str | None) -> DummyAppConfig:
        return base_config

    monkeypatch.setattr("fin_tracker.shared.cli.load_config", fake_load_config)
    monkeypatch.setattr("fin_tracker.shared.cli.run_migrations", lambda cfg: None)

    @click.command()
    @common_cli_options
    def sample(cli_ctx: CLIContext) -> None:
        click.echo(str(cli_ctx.db_path))

    override_path = tmp_path / "override.sqlite"
    result = runner.invoke(sample, ["--db", str(override_path)])

    assert result.exit_code == 0, result.output
    assert override_path.as_posix() in result.output


def test_common_cli_options_user_flag_and_env(
    monkeypatch: pytest.MonkeyPatch, runner: CliRunner, tmp_path: Path
) -> None:
    monkeypatch.setattr(
        "fin_tracker.shared.cli.load_config", lambda config_path: _stub_config(tmp_path)
    )
    monkeypatch.setattr("fin_tracker.shared.cli.run_migrations", lambda cfg: None)

    @click.command()
    @common_cli_options
    def sample(cli_ctx: CLIContext) -> None:
        click.echo(f"user={cli_ctx.user_id}")

    from_flag = runner.invoke(sample, ["--user", "alice"])
    from_env = runner.invoke(sample, [], env={"FINTRACKER_USER": "bob"})

    assert "user=alice" in from_flag.output
    assert "user=bob" in from_env.output


def test_common_cli_options_rejects_blank_user(
    monkeypatch: pytest.MonkeyPatch, runner: CliRunner, tmp_path: Path
) -> None:
    monkeypatch.setattr(
        "fin_tracker.shared.cli.load_config",
        lambda config_path: DummyAppConfig(tmp_path / "db.sqlite", default_user="   "),
    )
    monkeypatch.setattr("fin_tracker.shared.cli.run_migrations", lambda cfg: None)

    @click.command()
    @common_cli_options
    def sample(cli_ctx: CLIContext) -> None:
        click.echo("unreachable")

    result = runner.invoke(sample, [], env={"FINTRACKER_USER": None})

    assert result.exit_code != 0
    assert "unreachable" not in result.output


def test_handle_cli_errors_wraps_known_exceptions() -> None:
    @handle_cli_errors
    def boom() -> None:
        raise FinTrackerError("boom")

    with pytest.raises(click.ClickException) as excinfo:
        boom()
    assert str(excinfo.value) == "boom"


def test_handle_cli_errors_formats_configuration_errors() -> None:
    @handle_cli_errors
    def misconfigured() -> None:
        raise ConfigurationError("missing value")

    with pytest.raises(click.ClickException) as excinfo:
        misconfigured()
    assert "Configuration error" in str(excinfo.value)


def test_handle_cli_errors_includes_rule_rejection_reason() -> None:
    @handle_cli_errors
    def reject() -> None:
        raise RuleValidationError(RuleRejection.UNSAFE_REGEX, "pattern too complex")

    with pytest.raises(click.ClickException) as excinfo:
        reject()
    assert str(excinfo.value) == "Rule rejected (unsafe_regex): pattern too complex"


def test_handle_cli_errors_wraps_unexpected_exceptions() -> None:
    @handle_cli_errors
    def explode() -> None:
        raise RuntimeError("kapow")

    with pytest.raises(click.ClickException) as excinfo:
        explode()
    assert "Unexpected error: kapow" == str(excinfo.value)
