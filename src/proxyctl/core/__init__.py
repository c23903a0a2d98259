"""Core framework components for proxyctl."""

from proxyctl.core.exceptions import (
    ProxyctlError,
    ConfigurationError,
    ValidationError,
    ExecutionError,
    NoAddressError,
    PersistError,
    FirewallApplyError,
    LockError,
)

from proxyctl.core.context import ExecutionContext, create_context
from proxyctl.core.output import console, Console, Verbosity
from proxyctl.core.config import AppConfig, ProxyctlConfig
from proxyctl.core.audit import AuditLogger, AuditEvent, AuditEventType, AuditResult
from proxyctl.core.executor import CommandExecutor, CommandResult

__all__ = [
    # Exceptions
    "ProxyctlError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "NoAddressError",
    "PersistError",
    "FirewallApplyError",
    "LockError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "ProxyctlConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    # Executor
    "CommandExecutor",
    "CommandResult",
]
