"""Console output using Rich.

Provides:
- Colored, level-tagged messages
- Verbosity level control
- Dry-run mode indicators
- Tables for listings
"""

from enum import IntEnum
from typing import Any

from rich import box
from rich.console import Console as RichConsole
from rich.markup import escape
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors only
    NORMAL = 1   # Standard output
    VERBOSE = 2  # Additional details
    DEBUG = 3    # Everything


class Console:
    """Centralized console output with Rich integration.

    Errors and warnings go to stderr, everything else to stdout.
    """

    def __init__(self) -> None:
        self._console = RichConsole(highlight=False)
        self._err_console = RichConsole(stderr=True, highlight=False)
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False

    def configure(
        self,
        verbosity: int = 1,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        """Configure console output settings."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        self.no_color = no_color
        if no_color:
            self._console = RichConsole(highlight=False, no_color=True)
            self._err_console = RichConsole(stderr=True, highlight=False, no_color=True)

    # Basic output methods
    def info(self, message: str) -> None:
        """Print info message (green)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][INFO][/green] {message}")

    def success(self, message: str) -> None:
        """Print success message (green)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][OK][/green] {message}")

    def warn(self, message: str) -> None:
        """Print warning message (yellow) to stderr."""
        self._err_console.print(f"[yellow][WARN][/yellow] {message}")

    def error(self, message: str) -> None:
        """Print error message (red) to stderr."""
        self._err_console.print(f"[red][ERROR][/red] {message}")

    def debug(self, message: str) -> None:
        """Print debug message (cyan) - only in debug mode."""
        if self.verbosity >= Verbosity.DEBUG:
            self._console.print(f"[cyan][DEBUG][/cyan] {message}")

    def verbose(self, message: str) -> None:
        """Print verbose message (dim) - only in verbose mode."""
        if self.verbosity >= Verbosity.VERBOSE:
            self._console.print(f"[dim]{message}[/dim]")

    def step(self, message: str) -> None:
        """Print a step indicator (blue arrow)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[blue]->[/blue] {message}")

    def dry_run_msg(self, message: str) -> None:
        """Print dry-run indicator (blue)."""
        if self.dry_run:
            self._console.print(f"[blue][DRY-RUN][/blue] Would: {message}")

    def hint(self, message: str) -> None:
        """Print a helpful hint (cyan) to stderr."""
        self._err_console.print(f"[cyan]Hint:[/cyan] {message}")

    def detail(self, message: str) -> None:
        """Print an indented detail line to stderr."""
        self._err_console.print(f"  [dim]{message}[/dim]")

    def report(self, error: Any, prefix: str = "") -> None:
        """Print a ProxyctlError with its details and hint to stderr."""
        self.error(escape(f"{prefix}{error.message}"))
        for detail in error.details:
            self.detail(escape(detail))
        if error.hint:
            self.hint(escape(error.hint))

    # Structured output
    def plain(self, message: str) -> None:
        """Print a line without markup processing (machine-readable output)."""
        self._console.print(message, markup=False, highlight=False, soft_wrap=True)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        """Print a formatted table."""
        table = Table(title=title, box=box_style)
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*row)
        self._console.print(table)


# Global console instance
console = Console()
