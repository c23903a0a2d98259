"""Custom exceptions for proxyctl.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class ProxyctlError(Exception):
    """Base exception for all proxyctl errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(ProxyctlError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 2


class ValidationError(ProxyctlError):
    """Input validation errors.

    Raised when:
    - Proxy port outside the allowed range
    - Malformed IPv4 address or target port
    - Malformed ip:port target
    """
    exit_code = 3


class ExecutionError(ProxyctlError):
    """Command execution failures.

    Raised when:
    - Shell command returns non-zero exit code
    - Command times out or cannot be started
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


# Domain-specific exceptions

class NoAddressError(ProxyctlError):
    """Host has no usable address.

    Raised when:
    - No global-scope IPv4 address on the configured interface
    - Address discovery command fails
    """
    exit_code = 20


class PersistError(ProxyctlError):
    """Rule file could not be updated.

    Raised when:
    - Copy, write or rename of the rule file fails
    - Rule file has no commit marker

    The live firewall may no longer match the rule file.
    """
    exit_code = 21


class FirewallApplyError(ProxyctlError):
    """Live firewall rejected a rule.

    Raised when:
    - iptables insert or delete returns non-zero
    """
    exit_code = 22

    def __init__(
        self,
        message: str,
        *,
        rule: Optional[str] = None,
        table: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.rule = rule
        self.table = table


class LockError(ProxyctlError):
    """Lock file could not be opened."""
    exit_code = 23
