"""
proxyctl - TCP port-forwarding rule manager.

Maps external listening ports to internal IPv4:port destinations on an
iptables host, keeping the live ruleset and the persisted rule files
in step.
"""

__version__ = "1.0.0"
