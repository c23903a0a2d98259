"""Shared fixtures: rule files on tmp_path, an in-memory firewall, a fixed host address."""

import ipaddress
import threading

import pytest

from proxyctl.core.context import ExecutionContext
from proxyctl.core.exceptions import FirewallApplyError, NoAddressError
from proxyctl.services.iptables import FirewallGateway
from proxyctl.services.proxy import ProxyRuleController
from proxyctl.services.rule_table import (
    FILTER_TABLE,
    NAT_TABLE,
    AtomicFileEditor,
    RuleTable,
    RuleTableFile,
)


HOST_ADDRESS = "203.0.113.7"

SSH_RULE = "-A INPUT -p tcp -m tcp --dport 22 -j ACCEPT"
MASQUERADE_RULE = "-A POSTROUTING -o eth0 -j MASQUERADE"


class RecordingGateway(FirewallGateway):
    """In-memory live ruleset that records every call."""

    def __init__(self) -> None:
        self.live: list[tuple[str, str]] = []
        self.calls: list[tuple[str, str, str]] = []
        self.fail_on: str | None = None

    def apply_rule(self, table: str, line: str) -> bool:
        self.calls.append(("apply", table, line))
        if self.fail_on and self.fail_on in line:
            raise FirewallApplyError(f"rejected: {line}", rule=line, table=table)
        if (table, line) in self.live:
            return False
        self.live.append((table, line))
        return True

    def revoke_rule(self, table: str, line: str) -> bool:
        self.calls.append(("revoke", table, line))
        if (table, line) not in self.live:
            return False
        self.live.remove((table, line))
        return True


class FixedResolver:
    """Resolver returning a settable address; None means no address."""

    def __init__(self, address: str | None = HOST_ADDRESS) -> None:
        self.address = address

    def resolve(self) -> ipaddress.IPv4Address:
        if self.address is None:
            raise NoAddressError("No global IPv4 address found on any interface")
        return ipaddress.IPv4Address(self.address)


@pytest.fixture
def ctx():
    return ExecutionContext()


@pytest.fixture
def dry_ctx():
    ctx = ExecutionContext(dry_run=True)
    yield ctx
    ctx.console.configure()


@pytest.fixture
def rules_dir(tmp_path):
    """Rule files with one unrelated rule in each table."""
    filter_table = RuleTable.skeleton(FILTER_TABLE)
    filter_table.insert_before_marker([SSH_RULE])
    nat_table = RuleTable.skeleton(NAT_TABLE)
    nat_table.insert_before_marker([MASQUERADE_RULE])

    (tmp_path / "filter.rules").write_text(filter_table.render())
    (tmp_path / "nat.rules").write_text(nat_table.render())
    return tmp_path


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def resolver():
    return FixedResolver()


def _make_controller(ctx, rules_dir, gateway, resolver, lock=None, audit=None):
    editor = AtomicFileEditor(ctx)
    return ProxyRuleController(
        ctx,
        filter_table=RuleTableFile(rules_dir / "filter.rules", FILTER_TABLE, editor),
        nat_table=RuleTableFile(rules_dir / "nat.rules", NAT_TABLE, editor),
        gateway=gateway,
        resolver=resolver,
        lock=lock if lock is not None else threading.Lock(),
        audit=audit,
    )


@pytest.fixture
def controller(ctx, rules_dir, gateway, resolver):
    return _make_controller(ctx, rules_dir, gateway, resolver)


@pytest.fixture
def controller_factory():
    """Build extra controllers, e.g. one per thread."""
    return _make_controller


@pytest.fixture
def snapshot(rules_dir):
    """Callable returning the current (filter, nat) file contents."""
    def _snapshot() -> tuple[str, str]:
        return (
            (rules_dir / "filter.rules").read_text(),
            (rules_dir / "nat.rules").read_text(),
        )
    return _snapshot
