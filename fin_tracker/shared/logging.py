"""Rich-based logging for the fin-tracker CLIs.

All output goes to stderr; stdout is left to the JSON payloads the commands
print. Besides the plain levels, the logger knows the recurring import and
edit messages (dropped rows, commit progress, summaries, dry-run notices) so
callers do not format them by hand.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from rich.console import Console
from rich.theme import Theme
from rich.traceback import install

install(show_locals=False)

_THEME = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "bold green",
        "debug": "dim",
        "dry_run": "magenta",
    }
)

# At most this many row numbers are listed inline in a dropped-rows warning.
MAX_LISTED_ROWS = 20


def _stderr_console() -> Console:
    # Highlighting is off so merchant strings such as "UBER EATS #4522" print verbatim.
    return Console(stderr=True, theme=_THEME, highlight=False)


@dataclass(slots=True)
class Logger:
    """Logger facade backed by a Rich stderr console."""

    verbose: bool = False
    console: Console = field(default_factory=_stderr_console)

    def _emit(self, message: str, style: str) -> None:
        self.console.print(message, style=style, markup=False)

    def info(self, message: str) -> None:
        self._emit(message, "info")

    def success(self, message: str) -> None:
        self._emit(message, "success")

    def warning(self, message: str) -> None:
        self._emit(message, "warning")

    def error(self, message: str) -> None:
        self._emit(message, "error")

    def debug(self, message: str) -> None:
        if self.verbose:
            self._emit(message, "debug")

    def dry_run(self, message: str) -> None:
        """Report a write that was skipped because the command is previewing."""
        self._emit(f"[dry-run] {message}", "dry_run")

    def row_dropped(self, source: str, row_number: int, reason: object) -> None:
        self.debug(f"{source} row {row_number}: dropped ({reason})")

    def row_excluded(self, source: str, row_number: int, description: str) -> None:
        self.debug(f"{source} row {row_number}: excluded ({description})")

    def dropped_rows(self, rows: Iterable[int]) -> None:
        row_numbers = list(rows)
        if not row_numbers:
            return
        listed = ", ".join(str(row) for row in row_numbers[:MAX_LISTED_ROWS])
        if len(row_numbers) > MAX_LISTED_ROWS:
            listed += ", …"
        self.warning(f"Dropped {len(row_numbers)} unparseable row(s) (rows {listed}).")

    def excluded_rows(self, count: int) -> None:
        if count:
            self.info(f"Excluded {count} payment row(s).")

    def commit_progress(self, processed: int) -> None:
        self.info(f"Commit progress: processed {processed} row(s)…")

    def row_failed(self, index: int, message: str) -> None:
        self.warning(f"Row {index}: {message}")

    def summary(self, title: str, counts: Mapping[str, object]) -> None:
        """Print a titled block of ``label: value`` lines."""
        self.info(f"{title}:")
        for label, value in counts.items():
            self.info(f"  {label}: {value}")


def get_logger(verbose: bool = False) -> Logger:
    """Return a configured Logger instance."""
    return Logger(verbose=verbose)
