"""Output rendering helpers for list-style CLI commands."""

from __future__ import annotations

import csv
import json
import sys
from collections.abc import Mapping, Sequence
from typing import IO, Any

from rich import box
from rich.console import Console
from rich.table import Table

OUTPUT_FORMATS = ("table", "csv", "json")


def render_rows(
    columns: Sequence[str],
    rows: Sequence[Mapping[str, Any]],
    *,
    output_format: str = "table",
    stream: IO[str] | None = None,
    empty_message: str = "No rows.",
) -> None:
    """Render mapping rows as a Rich table, CSV or JSON."""
    output_stream = stream or sys.stdout
    fmt = (output_format or "table").lower()

    if fmt == "json":
        json.dump([dict(row) for row in rows], output_stream, indent=2, ensure_ascii=False)
        output_stream.write("\n")
    elif fmt == "csv":
        writer = csv.writer(output_stream)
        writer.writerow(columns)
        for row in rows:
            writer.writerow([_format_cell(row.get(column)) for column in columns])
    elif fmt == "table":
        if not rows:
            print(empty_message, file=output_stream)
            return
        console = Console(file=output_stream, highlight=False, force_terminal=False)
        table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*(_format_cell(row.get(column)) for column in columns))
        console.print(table)
    else:  # pragma: no cover - Click validation should prevent this
        raise ValueError(f"Unsupported output format '{output_format}'.")


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)
