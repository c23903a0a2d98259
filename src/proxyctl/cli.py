"""Main CLI entry point using Typer.

Verbs:
    proxyctl addproxy PORT IP:PORT [PORT IP:PORT ...]
    proxyctl removeproxy PORT [PORT ...]
    proxyctl showproxy PORT [PORT ...]
    proxyctl fixaddr
    proxyctl list
    proxyctl init
"""

import os
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from proxyctl import __version__
from proxyctl.core.audit import AuditLogger
from proxyctl.core.config import DEFAULT_CONFIG_PATH
from proxyctl.core.context import ExecutionContext, create_context
from proxyctl.core.exceptions import ProxyctlError
from proxyctl.core.executor import CommandExecutor
from proxyctl.core.output import console as app_console
from proxyctl.services.iptables import IptablesGateway
from proxyctl.services.lock import ExclusivityLock
from proxyctl.services.network import AddressResolver
from proxyctl.services.proxy import ProxyRuleController
from proxyctl.services.rule_table import FILTER_TABLE, NAT_TABLE, AtomicFileEditor, RuleTableFile


app = typer.Typer(
    name="proxyctl",
    help="Manage TCP port-forwarding rules on an iptables host.",
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"proxyctl version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    typer_ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Manage TCP port-forwarding ("proxy") rules.

    Each proxy maps an external port (16384-65535) to an internal
    IPv4:port. Rules are applied to the live firewall and persisted
    to the rule files replayed at boot.

    [bold]Examples:[/bold]
        proxyctl addproxy 23456 10.0.0.5:8080
        proxyctl showproxy 23456
        proxyctl removeproxy 23456
        proxyctl fixaddr
    """
    if typer_ctx.invoked_subcommand is None:
        typer.echo(typer_ctx.get_help())
        raise typer.Exit(2)


def build_controller(ctx: ExecutionContext) -> ProxyRuleController:
    """Wire the controller from the context's configuration."""
    cfg = ctx.config
    executor = CommandExecutor(ctx)
    editor = AtomicFileEditor(ctx)
    return ProxyRuleController(
        ctx,
        filter_table=RuleTableFile(cfg.filter_path, FILTER_TABLE, editor),
        nat_table=RuleTableFile(cfg.nat_path, NAT_TABLE, editor),
        gateway=IptablesGateway(ctx, executor),
        resolver=AddressResolver(executor, interface=cfg.interface),
        lock=ExclusivityLock(cfg.lock_path, console=ctx.console),
        audit=AuditLogger(log_path=cfg.audit_log, enabled=cfg.audit_enabled),
    )


def _check_root(ctx: ExecutionContext) -> None:
    """Check for root privileges."""
    if os.geteuid() != 0 and not ctx.dry_run:
        ctx.console.error("This operation requires root privileges")
        ctx.console.hint("Run with: sudo proxyctl ...")
        raise typer.Exit(6)


def handle_error(error: ProxyctlError) -> None:
    """Print a ProxyctlError and exit with its code."""
    app_console.report(error)
    raise typer.Exit(error.exit_code)


# ============================================================================
# Mutating commands
# ============================================================================

@app.command("addproxy")
def addproxy(
    args: Annotated[
        list[str],
        typer.Argument(
            metavar="PORT IP:PORT [PORT IP:PORT ...]",
            help="Proxy port and target pairs.",
            show_default=False,
        ),
    ],
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Forward proxy ports to internal targets.

    Re-running with the same arguments is safe: rules already present
    are left alone and missing ones are added.

    [bold]Examples:[/bold]
        proxyctl addproxy 23456 10.0.0.5:8080
        proxyctl addproxy 23456 10.0.0.5:8080 23457 10.0.0.6:22
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)

    if len(args) % 2 != 0:
        ctx.console.error("Arguments must be PORT IP:PORT pairs")
        ctx.console.hint("Example: proxyctl addproxy 23456 10.0.0.5:8080")
        raise typer.Exit(2)

    _check_root(ctx)

    try:
        controller = build_controller(ctx)
        result = controller.add_proxies(zip(args[0::2], args[1::2]))
    except ProxyctlError as e:
        handle_error(e)

    if not result.ok:
        raise typer.Exit(result.exit_code)


@app.command("removeproxy")
def removeproxy(
    ports: Annotated[
        list[str],
        typer.Argument(metavar="PORT [PORT ...]", help="Proxy ports to remove.", show_default=False),
    ],
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Remove proxy mappings.

    Removing a port that has no mapping succeeds without changes.

    [bold]Examples:[/bold]
        proxyctl removeproxy 23456
        proxyctl removeproxy 23456 23457
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)
    _check_root(ctx)

    try:
        controller = build_controller(ctx)
        result = controller.remove_proxies(ports)
    except ProxyctlError as e:
        handle_error(e)

    if not result.ok:
        raise typer.Exit(result.exit_code)


@app.command("fixaddr")
def fixaddr(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Point persisted nat rules at the current host address.

    Only the nat rule file is rewritten. Run this before the rule files
    are replayed into the kernel (e.g. early at boot).
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)
    _check_root(ctx)

    try:
        build_controller(ctx).fix_addr()
    except ProxyctlError as e:
        handle_error(e)


@app.command("init")
def init(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Create empty filter and nat rule files if they are missing."""
    ctx = create_context(dry_run=dry_run, verbose=verbose, no_color=no_color, config=config)
    _check_root(ctx)

    try:
        created = build_controller(ctx).initialize()
    except ProxyctlError as e:
        handle_error(e)

    if not created:
        ctx.console.info("Rule files already exist")


# ============================================================================
# Read-only commands
# ============================================================================

@app.command("showproxy")
def showproxy(
    ports: Annotated[
        list[str],
        typer.Argument(metavar="PORT [PORT ...]", help="Proxy ports to look up.", show_default=False),
    ],
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Print 'PORT DESTINATION' for each configured port.

    Ports without a mapping print nothing. Malformed ports are reported
    and the remaining ports are still looked up.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        result = build_controller(ctx).show_proxy(ports)
    except ProxyctlError as e:
        handle_error(e)

    for port, destination in result.succeeded:
        ctx.console.plain(f"{port} {destination}")

    if not result.ok:
        raise typer.Exit(result.exit_code)


@app.command("list")
def list_cmd(
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """List all proxy mappings in the rule files."""
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        proxies = build_controller(ctx).list_proxies()
    except ProxyctlError as e:
        handle_error(e)

    if not proxies:
        ctx.console.info("No proxies configured")
        return

    rows = []
    for status in proxies:
        if status.complete:
            state = "[green]present[/green]"
        else:
            missing = "nat" if status.in_filter else "filter"
            state = f"[yellow]partial (no {missing} rules)[/yellow]"
        rows.append([str(status.proxy_port), status.destination or "-", state])

    ctx.console.table("Proxies", ["Port", "Destination", "State"], rows)


if __name__ == "__main__":
    app()
