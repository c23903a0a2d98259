"""Command execution with dry-run support and output capture."""

import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional

from proxyctl.core.context import ExecutionContext
from proxyctl.core.exceptions import ExecutionError


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0


class CommandExecutor:
    """Safe command execution with dry-run support and output capture.

    Read-only probes pass ``mutating=False`` so they still run in dry-run
    mode; everything else is only printed.
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        self.ctx = ctx

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        mutating: bool = True,
        timeout: Optional[int] = 30,
    ) -> CommandResult:
        """Execute a command without a shell.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            mutating: If False, the command runs even in dry-run mode
            timeout: Command timeout in seconds

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails and check=True
        """
        if description:
            self.ctx.console.step(description)

        cmd_display = shlex.join(command)
        self.ctx.console.debug(f"Running: {cmd_display}")

        if self.ctx.dry_run and mutating:
            self.ctx.console.dry_run_msg(f"Run: {cmd_display}")
            return CommandResult(
                command=command,
                return_code=0,
                stdout="",
                stderr="",
            )

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
            )
        except FileNotFoundError as e:
            raise ExecutionError(
                f"Command not found: {command[0]}",
                command=cmd_display,
                hint=f"Install {command[0]} or check PATH",
                details=[str(e)],
            ) from e

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr.strip() or None,
            )

        return cmd_result
