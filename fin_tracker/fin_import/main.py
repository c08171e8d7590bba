"""fin-import CLI entrypoint."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click

from fin_tracker.shared.cli import CLIContext, common_cli_options, handle_cli_errors
from fin_tracker.shared.database import connect

from .candidates import (
    commit_result_to_payload,
    load_candidates_file,
    preview_to_payload,
    write_candidates_file,
)
from .categorizer.advisory import build_advisor
from .importer import load_csv_text
from .pipeline import CommitResult, ImportOrchestrator, ImportPreview


@click.command(help="Import a monthly bank export: preview by default, --commit to persist.")
@click.argument("csv_file", required=False, type=click.Path(path_type=str))
@click.option("--year", type=int, help="Target year of the import period.")
@click.option("--month", type=click.IntRange(1, 12), help="Target month (1-12).")
@click.option("--commit", "do_commit", is_flag=True, help="Persist new rows and learn rules.")
@click.option(
    "--preview-output",
    type=click.Path(path_type=str),
    help="Write preview candidates to JSON for editing before commit.",
)
@click.option(
    "--candidates",
    "candidates_path",
    type=click.Path(path_type=str),
    help="Commit an edited candidates file instead of a CSV export.",
)
@click.option(
    "--suggest",
    is_flag=True,
    help="Attach advisory suggestions to unresolved rows in the preview.",
)
@common_cli_options
@handle_cli_errors
def main(
    csv_file: str | None,
    year: int | None,
    month: int | None,
    do_commit: bool,
    preview_output: str | None,
    candidates_path: str | None,
    suggest: bool,
    cli_ctx: CLIContext,
) -> None:
    if candidates_path:
        if csv_file:
            raise click.UsageError("--candidates should be used without a CSV file.")
        _handle_candidates(Path(candidates_path), cli_ctx)
        return

    if not csv_file:
        raise click.UsageError("Provide a CSV export path ('-' for stdin) or --candidates.")
    if year is None or month is None:
        raise click.UsageError("--year and --month are required when importing a CSV export.")

    text = load_csv_text(csv_file)
    if do_commit and not cli_ctx.dry_run:
        if preview_output:
            cli_ctx.logger.info("--commit specified; ignoring --preview-output.")
        _handle_commit(text, year, month, cli_ctx)
        return
    if do_commit:
        cli_ctx.logger.dry_run("Showing the preview instead of committing.")
    _handle_preview(text, year, month, cli_ctx, suggest=suggest, preview_output=preview_output)


def _handle_preview(
    text: str,
    year: int,
    month: int,
    cli_ctx: CLIContext,
    *,
    suggest: bool,
    preview_output: str | None,
) -> ImportPreview:
    advisor = build_advisor(cli_ctx.config, cli_ctx.logger) if suggest else None
    with connect(cli_ctx.config) as connection:
        orchestrator = ImportOrchestrator(
            connection,
            cli_ctx.user_id,
            config=cli_ctx.config,
            logger=cli_ctx.logger,
            advisor=advisor,
        )
        preview = orchestrator.preview(text, year, month, suggest=suggest)

    _print_preview_summary(cli_ctx, preview)
    if preview_output:
        output_path = Path(preview_output)
        write_candidates_file(output_path, preview)
        cli_ctx.logger.info(
            f"Wrote {len(preview.candidates)} candidate(s) to {output_path}. "
            "Edit categories there, then run with --candidates to commit."
        )
    else:
        _echo_json(preview_to_payload(preview))
    return preview


def _handle_commit(text: str, year: int, month: int, cli_ctx: CLIContext) -> CommitResult:
    with connect(cli_ctx.config) as connection:
        orchestrator = ImportOrchestrator(
            connection,
            cli_ctx.user_id,
            config=cli_ctx.config,
            logger=cli_ctx.logger,
        )
        result = orchestrator.commit_text(text, year, month)
    _print_commit_summary(cli_ctx, result)
    return result


def _handle_candidates(path: Path, cli_ctx: CLIContext) -> CommitResult | None:
    candidates = load_candidates_file(path)
    if cli_ctx.dry_run:
        cli_ctx.logger.dry_run(f"{len(candidates)} candidate(s) from {path} would be committed.")
        return None
    with connect(cli_ctx.config) as connection:
        orchestrator = ImportOrchestrator(
            connection,
            cli_ctx.user_id,
            config=cli_ctx.config,
            logger=cli_ctx.logger,
        )
        result = orchestrator.commit(candidates)
    _print_commit_summary(cli_ctx, result)
    return result


def _print_preview_summary(cli_ctx: CLIContext, preview: ImportPreview) -> None:
    counts: dict[str, object] = {
        "Transactions in period": len(preview.candidates),
        "New": preview.new_count,
        "Duplicates": preview.duplicate_count,
        "Categorized": preview.categorized_count,
    }
    if preview.dropped_rows:
        counts["Dropped rows"] = len(preview.dropped_rows)
    cli_ctx.logger.summary("Preview summary", counts)


def _print_commit_summary(cli_ctx: CLIContext, result: CommitResult) -> None:
    cli_ctx.logger.summary(
        "Import summary",
        {
            "Candidates": result.total_candidates,
            "Imported": result.imported_count,
            "Duplicates skipped": result.skipped_duplicate_count,
        },
    )
    if result.created_categories:
        cli_ctx.logger.success(f"Created categories: {', '.join(result.created_categories)}")
    for error in result.errors:
        cli_ctx.logger.error(f"  Row {error.index}: {error.message}")
    _echo_json(commit_result_to_payload(result))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


if __name__ == "__main__":  # pragma: no cover
    main()
