"""Live firewall gateway.

The controller talks to the kernel ruleset only through a
FirewallGateway. Rules are passed as persisted rule lines
(``-A CHAIN <match> -j <target>``) so the live and the persisted form
can never drift apart in their match criteria.

Gateway contract:
- ``apply_rule`` is immediately effective, and applying a rule that is
  already present is a successful no-op
- ``revoke_rule`` deletes the rule with the same match criteria, and
  revoking an absent rule is a successful no-op
- a rejected command raises FirewallApplyError
"""

import shlex
from abc import ABC, abstractmethod

from proxyctl.core.context import ExecutionContext
from proxyctl.core.exceptions import ExecutionError, FirewallApplyError
from proxyctl.core.executor import CommandExecutor
from proxyctl.services.rule_table import FILTER_TABLE, TABLE_CHAINS


def parse_rule_line(line: str) -> tuple[str, list[str]]:
    """Split a persisted ``-A CHAIN ...`` line into chain and rule arguments.

    Raises:
        FirewallApplyError: If the line is not an append rule
    """
    try:
        tokens = shlex.split(line)
    except ValueError as e:
        raise FirewallApplyError(f"Unparseable rule line: {line}", rule=line) from e

    if len(tokens) < 3 or tokens[0] != "-A":
        raise FirewallApplyError(
            f"Not an append rule: {line}",
            rule=line,
            hint="Rule lines must start with '-A CHAIN'",
        )
    return tokens[1], tokens[2:]


class FirewallGateway(ABC):
    """Capability interface to the live kernel ruleset."""

    @abstractmethod
    def apply_rule(self, table: str, line: str) -> bool:
        """Make ``line`` live in ``table``. Returns False if already present."""

    @abstractmethod
    def revoke_rule(self, table: str, line: str) -> bool:
        """Remove ``line`` from ``table``. Returns False if it was absent."""


class IptablesGateway(FirewallGateway):
    """FirewallGateway backed by the ``iptables`` command.

    Filter rules are inserted at the top of their chain so they precede
    any catch-all drop; nat rules are appended.
    """

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        self.ctx = ctx
        self.executor = executor

    def rule_exists(self, table: str, chain: str, args: list[str]) -> bool:
        """Check if a rule is live, using ``iptables -C``."""
        if self.ctx.dry_run:
            return False  # In dry-run, assume rule doesn't exist

        result = self._run_iptables(["-t", table, "-C", chain] + args, check=False, mutating=False)
        return result.success

    def apply_rule(self, table: str, line: str) -> bool:
        self._check_table(table)
        chain, args = parse_rule_line(line)

        if self.rule_exists(table, chain, args):
            self.ctx.console.verbose(f"Rule already live, skipping: {line}")
            return False

        verb = ["-I", chain] if table == FILTER_TABLE else ["-A", chain]
        self._run_iptables(["-t", table] + verb + args)
        return True

    def revoke_rule(self, table: str, line: str) -> bool:
        self._check_table(table)
        chain, args = parse_rule_line(line)

        if not self.ctx.dry_run and not self.rule_exists(table, chain, args):
            self.ctx.console.verbose(f"Rule not live, skipping delete: {line}")
            return False

        self._run_iptables(["-t", table, "-D", chain] + args)
        return True

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in TABLE_CHAINS:
            raise FirewallApplyError(f"Unsupported table: {table}", table=table)

    def _run_iptables(
        self,
        args: list[str],
        *,
        check: bool = True,
        mutating: bool = True,
    ):
        """Run iptables, waiting for the xtables lock (-w)."""
        cmd = ["iptables", "-w"] + args
        try:
            result = self.executor.run(cmd, check=False, mutating=mutating)
        except ExecutionError as e:
            raise FirewallApplyError(
                f"iptables could not be run: {e.message}",
                rule=shlex.join(args),
                hint=e.hint,
                details=e.details,
            ) from e

        if check and result.return_code != 0:
            raise FirewallApplyError(
                f"iptables command failed: {shlex.join(cmd)}",
                rule=shlex.join(args),
                table=args[1] if len(args) > 1 and args[0] == "-t" else None,
                details=[result.stderr.strip()] if result.stderr.strip() else None,
            )

        return result
