"""Host address discovery.

Finds the global-scope IPv4 address that DNAT rules are anchored to.
"""

import ipaddress
from typing import Optional

from proxyctl.core.exceptions import ExecutionError, NoAddressError
from proxyctl.core.executor import CommandExecutor


def parse_global_address(output: str) -> Optional[ipaddress.IPv4Address]:
    """Return the first global-scope IPv4 address from ``ip -o addr`` output.

    Example line:
    2: eth0    inet 203.0.113.7/24 brd 203.0.113.255 scope global eth0\\       valid_lft forever ...
    """
    for line in output.strip().splitlines():
        parts = line.split()
        if "inet" not in parts:
            continue
        # Guard against output that was not filtered by scope
        if "scope" in parts:
            scope_idx = parts.index("scope")
            if scope_idx + 1 < len(parts) and parts[scope_idx + 1] != "global":
                continue

        idx = parts.index("inet")
        if idx + 1 >= len(parts):
            continue
        try:
            iface = ipaddress.ip_interface(parts[idx + 1])
        except ValueError:
            continue
        if iface.version == 4:
            return iface.ip
    return None


class AddressResolver:
    """Resolves the host's current global-scope IPv4 address.

    Args:
        executor: Command executor used to query ``ip``
        interface: Restrict the lookup to this interface (None = any)
    """

    def __init__(self, executor: CommandExecutor, interface: Optional[str] = None) -> None:
        self.executor = executor
        self.interface = interface

    def _command(self) -> list[str]:
        cmd = ["ip", "-4", "-o", "addr", "show"]
        if self.interface:
            cmd.extend(["dev", self.interface])
        cmd.extend(["scope", "global"])
        return cmd

    def resolve(self) -> ipaddress.IPv4Address:
        """Return the current host address.

        Raises:
            NoAddressError: If no global-scope IPv4 address exists
        """
        where = f"interface {self.interface}" if self.interface else "any interface"
        try:
            result = self.executor.run(self._command(), mutating=False)
        except ExecutionError as e:
            raise NoAddressError(
                f"Cannot query addresses on {where}",
                hint="Check that the interface exists and iproute2 is installed",
                details=e.details,
            ) from e

        address = parse_global_address(result.stdout)
        if address is None:
            raise NoAddressError(
                f"No global IPv4 address found on {where}",
                hint="Set 'interface' in the config or PROXYCTL_INTERFACE",
            )

        self.executor.ctx.console.debug(f"Host address: {address}")
        return address
