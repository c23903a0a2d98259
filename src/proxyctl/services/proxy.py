"""Proxy rule controller.

Maps an external proxy port to an internal ``ip:port`` with four rules:

    filter  -A INPUT  ... --dport P ... -j ACCEPT
    filter  -A OUTPUT -d T/32 ... --dport TP ... -j ACCEPT
    nat     -A OUTPUT     -d H/32 ... --dport P ... -j DNAT --to-destination T:TP
    nat     -A PREROUTING -d H/32 ... --dport P ... -j DNAT --to-destination T:TP

where H is the host's current global address. Every rule carries the
``proxy:P`` comment tag.

Update protocol, per table:
1. scan the persisted table for the tag; if present, the table is done
2. apply the rules to the live firewall
3. persist them through the AtomicFileEditor

A crash between 2 and 3 leaves live rules without file backing. Retrying
the same add redoes 2 (the gateway treats live duplicates as success)
and then 3, so retrying converges. Nothing is ever rolled back.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import ContextManager, Iterable, Optional, Union

from proxyctl.core.audit import AuditEventType, AuditLogger, AuditResult
from proxyctl.core.context import ExecutionContext
from proxyctl.core.exceptions import PersistError, ProxyctlError
from proxyctl.core.validation import parse_target, validate_proxy_port
from proxyctl.services.iptables import FirewallGateway
from proxyctl.services.network import AddressResolver
from proxyctl.services.rule_table import FILTER_TABLE, NAT_TABLE, RuleTableFile, tag_for


PortArg = Union[int, str]


@dataclass(frozen=True)
class ProxyTarget:
    """Backend destination of a proxy mapping."""
    address: str
    port: int

    @classmethod
    def parse(cls, value: str) -> "ProxyTarget":
        """Parse ``ip:port``.

        Raises:
            ValidationError: If the target is malformed
        """
        address, port = parse_target(value)
        return cls(address=address, port=port)

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class ProxyMapping:
    """An external proxy port forwarded to a target.

    The mapping has no storage of its own; it only exists as the tagged
    rule lines derived here.
    """
    proxy_port: int
    target: ProxyTarget

    @property
    def tag(self) -> str:
        return tag_for(self.proxy_port)

    def filter_lines(self) -> list[str]:
        """Inbound and outbound accept rules."""
        return [
            f"-A INPUT -p tcp -m tcp --dport {self.proxy_port}"
            f" -m comment --comment {self.tag} -j ACCEPT",
            f"-A OUTPUT -d {self.target.address}/32 -p tcp -m tcp --dport {self.target.port}"
            f" -m comment --comment {self.tag} -j ACCEPT",
        ]

    def nat_lines(self, host_address: Union[str, ipaddress.IPv4Address]) -> list[str]:
        """DNAT rules for locally originated and incoming traffic."""
        return [
            f"-A {chain} -d {host_address}/32 -p tcp -m tcp --dport {self.proxy_port}"
            f" -m comment --comment {self.tag} -j DNAT --to-destination {self.target}"
            for chain in ("OUTPUT", "PREROUTING")
        ]


@dataclass
class AddResult:
    """Outcome of a single add."""
    mapping: ProxyMapping
    filter_added: bool = False
    nat_added: bool = False

    @property
    def changed(self) -> bool:
        return self.filter_added or self.nat_added


@dataclass
class RemoveResult:
    """Outcome of a single remove."""
    proxy_port: int
    filter_removed: int = 0
    nat_removed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.filter_removed or self.nat_removed)


@dataclass
class FixAddrResult:
    """Outcome of an address repair."""
    address: str
    replaced: list[str] = field(default_factory=list)


@dataclass
class ProxyStatus:
    """One proxy port as seen in the persisted tables."""
    proxy_port: int
    destination: Optional[str]
    in_filter: bool
    in_nat: bool

    @property
    def complete(self) -> bool:
        return self.in_filter and self.in_nat


@dataclass
class BatchResult:
    """Per-item outcomes of a batch; failures do not stop the batch."""
    succeeded: list = field(default_factory=list)
    failed: list[tuple[str, ProxyctlError]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        """Exit code of the first failure, or 0."""
        return self.failed[0][1].exit_code if self.failed else 0


class ProxyRuleController:
    """Add, remove, show and repair proxy mappings.

    Every public operation runs while holding ``lock``. Batches hold it
    once for their whole duration.

    Args:
        ctx: Execution context
        filter_table: Persisted filter table
        nat_table: Persisted nat table
        gateway: Live firewall
        resolver: Host address lookup
        lock: Any context manager providing mutual exclusion
        audit: Audit logger (None = no audit trail)
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        filter_table: RuleTableFile,
        nat_table: RuleTableFile,
        gateway: FirewallGateway,
        resolver: AddressResolver,
        lock: ContextManager,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.ctx = ctx
        self.filter_table = filter_table
        self.nat_table = nat_table
        self.gateway = gateway
        self.resolver = resolver
        self.lock = lock
        self.audit = audit

    @property
    def console(self):
        return self.ctx.console

    # =========================================================================
    # Add
    # =========================================================================

    def add_proxy(self, proxy_port: PortArg, target: Union[str, ProxyTarget]) -> AddResult:
        """Create the mapping ``proxy_port -> target``.

        Raises:
            ValidationError: Bad port or target; nothing was touched
            NoAddressError: nat rules needed but host has no address
            FirewallApplyError: Live firewall rejected a rule
            PersistError: Rule file could not be updated
        """
        with self.lock:
            return self._audited_add(proxy_port, target)

    def add_proxies(self, pairs: Iterable[tuple[PortArg, Union[str, ProxyTarget]]]) -> BatchResult:
        """Add several mappings in order, each independently."""
        batch = BatchResult()
        with self.lock:
            for proxy_port, target in pairs:
                try:
                    batch.succeeded.append(self._audited_add(proxy_port, target))
                except ProxyctlError as e:
                    self.console.report(e, prefix=f"{proxy_port}: ")
                    batch.failed.append((str(proxy_port), e))
        return batch

    def _audited_add(self, proxy_port: PortArg, target: Union[str, ProxyTarget]) -> AddResult:
        try:
            result = self._add(proxy_port, target)
        except ProxyctlError as e:
            self._record(
                AuditEventType.PROXY_ADD, str(proxy_port), error=e,
                parameters={"target": str(target)},
            )
            raise
        self._record(
            AuditEventType.PROXY_ADD, str(proxy_port),
            parameters={
                "target": str(result.mapping.target),
                "filter_added": result.filter_added,
                "nat_added": result.nat_added,
            },
        )
        return result

    def _add(self, proxy_port: PortArg, target: Union[str, ProxyTarget]) -> AddResult:
        port = validate_proxy_port(proxy_port)
        if not isinstance(target, ProxyTarget):
            target = ProxyTarget.parse(target)
        mapping = ProxyMapping(port, target)
        result = AddResult(mapping)

        self.console.step(f"Adding proxy {port} -> {target}")

        if self.filter_table.load().has_tag(port):
            self.console.verbose(f"filter rules for {port} already present, skipping")
        else:
            self._apply_and_persist(self.filter_table, FILTER_TABLE, mapping.filter_lines())
            result.filter_added = True

        if self.nat_table.load().has_tag(port):
            self.console.verbose(f"nat rules for {port} already present, skipping")
        else:
            host_address = self.resolver.resolve()
            self._apply_and_persist(self.nat_table, NAT_TABLE, mapping.nat_lines(host_address))
            result.nat_added = True

        if result.changed:
            self.console.success(f"Proxy {port} -> {target}")
        else:
            self.console.info(f"Proxy {port} already configured")
        return result

    def _apply_and_persist(self, table_file: RuleTableFile, table: str, lines: list[str]) -> None:
        for line in lines:
            self.console.debug(f"apply {table}: {line}")
            self.gateway.apply_rule(table, line)
        try:
            table_file.insert(lines)
        except PersistError as e:
            self.console.warn(f"Live {table} rules are not persisted in {table_file.path}")
            e.details.append(f"{table} rules are live but not in {table_file.path}; re-run the same add")
            raise

    # =========================================================================
    # Remove
    # =========================================================================

    def remove_proxy(self, proxy_port: PortArg) -> RemoveResult:
        """Remove every rule tagged with ``proxy_port``.

        Removing a mapping that does not exist succeeds and changes nothing.
        """
        with self.lock:
            return self._audited_remove(proxy_port)

    def remove_proxies(self, ports: Iterable[PortArg]) -> BatchResult:
        """Remove several mappings in order, each independently."""
        batch = BatchResult()
        with self.lock:
            for proxy_port in ports:
                try:
                    batch.succeeded.append(self._audited_remove(proxy_port))
                except ProxyctlError as e:
                    self.console.report(e, prefix=f"{proxy_port}: ")
                    batch.failed.append((str(proxy_port), e))
        return batch

    def _audited_remove(self, proxy_port: PortArg) -> RemoveResult:
        try:
            result = self._remove(proxy_port)
        except ProxyctlError as e:
            self._record(AuditEventType.PROXY_REMOVE, str(proxy_port), error=e)
            raise
        if result.changed:
            self._record(
                AuditEventType.PROXY_REMOVE, str(proxy_port),
                parameters={
                    "filter_removed": result.filter_removed,
                    "nat_removed": result.nat_removed,
                },
            )
        return result

    def _remove(self, proxy_port: PortArg) -> RemoveResult:
        port = validate_proxy_port(proxy_port)
        result = RemoveResult(port)

        result.filter_removed = self._revoke_and_delete(self.filter_table, FILTER_TABLE, port)
        result.nat_removed = self._revoke_and_delete(self.nat_table, NAT_TABLE, port)

        if result.changed:
            self.console.success(f"Removed proxy {port}")
        else:
            self.console.info(f"No rules for proxy {port}, nothing to remove")
        return result

    def _revoke_and_delete(self, table_file: RuleTableFile, table: str, port: int) -> int:
        lines = table_file.load().tagged_lines(port)
        if not lines:
            return 0
        for line in lines:
            self.console.debug(f"revoke {table}: {line}")
            self.gateway.revoke_rule(table, line)
        try:
            table_file.delete(port)
        except PersistError as e:
            self.console.warn(f"Revoked {table} rules are still persisted in {table_file.path}")
            e.details.append(f"{table} rules were revoked but are still in {table_file.path}; re-run the same remove")
            raise
        return len(lines)

    # =========================================================================
    # Read-only
    # =========================================================================

    def show_proxy(self, ports: Iterable[PortArg]) -> BatchResult:
        """Destinations of the requested ports.

        ``succeeded`` holds ``(port, destination)`` pairs. Ports without a
        nat rule are left out; malformed ports are reported and collected
        in ``failed`` without stopping the others.
        """
        batch = BatchResult()
        with self.lock:
            nat = self.nat_table.load()
        for proxy_port in ports:
            try:
                port = validate_proxy_port(proxy_port)
            except ProxyctlError as e:
                self.console.report(e, prefix=f"{proxy_port}: ")
                batch.failed.append((str(proxy_port), e))
                continue
            destination = nat.destination(port)
            if destination is not None:
                batch.succeeded.append((port, destination))
        return batch

    def list_proxies(self) -> list[ProxyStatus]:
        """Every proxy port found in either table, nat order first."""
        with self.lock:
            filter_rules = self.filter_table.load()
            nat = self.nat_table.load()

        ports = nat.ports()
        ports.extend(p for p in filter_rules.ports() if p not in ports)
        return [
            ProxyStatus(
                proxy_port=port,
                destination=nat.destination(port),
                in_filter=filter_rules.has_tag(port),
                in_nat=nat.has_tag(port),
            )
            for port in ports
        ]

    # =========================================================================
    # Address repair
    # =========================================================================

    def fix_addr(self) -> FixAddrResult:
        """Point every persisted nat rule at the current host address.

        Only the nat rule file is rewritten. The live firewall picks the
        change up when the rule files are next replayed, so this must run
        before that replay.
        """
        with self.lock:
            try:
                result = self._fix_addr()
            except ProxyctlError as e:
                self._record(AuditEventType.PROXY_FIXADDR, "*", error=e)
                raise
        if result.replaced:
            self._record(
                AuditEventType.PROXY_FIXADDR, "*",
                parameters={"address": result.address, "replaced": result.replaced},
            )
        return result

    def _fix_addr(self) -> FixAddrResult:
        current = str(self.resolver.resolve())
        result = FixAddrResult(address=current)

        stale = [addr for addr in self.nat_table.load().addresses() if addr != current]
        if not stale:
            self.console.info(f"All nat rules already use {current}")
            return result

        self.nat_table.rewrite_addresses(stale, current)
        result.replaced.extend(stale)
        self.console.success(f"Rewrote {', '.join(stale)} -> {current}")
        return result

    # =========================================================================
    # Setup
    # =========================================================================

    def initialize(self) -> list[RuleTableFile]:
        """Create missing rule files. Returns the files that were created."""
        created = []
        with self.lock:
            for table_file in (self.filter_table, self.nat_table):
                if table_file.initialize():
                    self.console.success(f"Created {table_file.path}")
                    created.append(table_file)
                else:
                    self.console.verbose(f"{table_file.path} already exists")
        if created:
            self._record(
                AuditEventType.RULES_INIT, "*",
                parameters={"files": [str(t.path) for t in created]},
            )
        return created

    def _record(
        self,
        event_type: AuditEventType,
        target: str,
        *,
        parameters: Optional[dict] = None,
        error: Optional[ProxyctlError] = None,
    ) -> None:
        if self.audit is None:
            return
        if error is not None:
            result = AuditResult.FAILURE
        elif self.ctx.dry_run:
            result = AuditResult.DRY_RUN
        else:
            result = AuditResult.SUCCESS
        self.audit.log_operation(
            event_type,
            result,
            target,
            parameters=parameters,
            error=error.message if error is not None else None,
        )
