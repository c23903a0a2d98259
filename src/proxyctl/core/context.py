"""Execution context for commands.

The ExecutionContext holds the flags that affect how a command runs.
It is passed to the executor, the rule file editor and the controller.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from proxyctl.core.config import AppConfig, DEFAULT_CONFIG_PATH
from proxyctl.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Execution context passed to all commands.

    Attributes:
        dry_run: If True, show what would happen without executing
        verbosity: Output verbosity level (0-3)
        no_color: If True, disable colored output
        config_path: Path to configuration file
    """

    # Runtime flags
    dry_run: bool = False
    verbosity: int = 1
    no_color: bool = False

    # Configuration
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    # Internal state (initialized lazily)
    _config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        """Configure console after initialization."""
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> AppConfig:
        """Get application configuration (lazy loaded)."""
        if self._config is None:
            self._config = AppConfig(config_path=self.config_path)
        return self._config

    @property
    def console(self) -> Console:
        """Get console for output."""
        return self._console


def create_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create an execution context from CLI options.

    Args:
        dry_run: Preview changes without executing
        verbose: Increase verbosity (can be repeated)
        quiet: Suppress non-essential output
        no_color: Disable colored output
        config: Path to configuration file

    Returns:
        Configured execution context
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return ExecutionContext(
        dry_run=dry_run,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config or DEFAULT_CONFIG_PATH,
    )
