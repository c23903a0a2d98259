"""Services that touch the host: live firewall, rule files, lock, addresses."""

from proxyctl.services.iptables import FirewallGateway, IptablesGateway
from proxyctl.services.lock import ExclusivityLock
from proxyctl.services.network import AddressResolver
from proxyctl.services.proxy import ProxyMapping, ProxyRuleController, ProxyTarget
from proxyctl.services.rule_table import AtomicFileEditor, RuleTable, RuleTableFile

__all__ = [
    "AddressResolver",
    "AtomicFileEditor",
    "ExclusivityLock",
    "FirewallGateway",
    "IptablesGateway",
    "ProxyMapping",
    "ProxyRuleController",
    "ProxyTarget",
    "RuleTable",
    "RuleTableFile",
]
