"""Input validation utilities.

Validates proxy ports, target ports and IPv4 addresses. All validators
return the validated value or raise ValidationError.
"""

import re
from typing import Union

from proxyctl.core.exceptions import ValidationError


# Proxy ports live above the well-known and registered ranges
MIN_PROXY_PORT = 16384
MAX_PROXY_PORT = 65535

MIN_PORT = 1
MAX_PORT = 65535

DIGITS_PATTERN = re.compile(r"^[0-9]+$")
IPV4_PATTERN = re.compile(r"^([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})$")


def _to_int(value: Union[int, str], what: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {what}: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not DIGITS_PATTERN.match(text):
        raise ValidationError(
            f"Invalid {what}: '{value}'",
            hint=f"The {what} must be a decimal number",
        )
    return int(text)


def validate_proxy_port(value: Union[int, str]) -> int:
    """Validate an externally exposed proxy port.

    Args:
        value: Port number (int or decimal string)

    Returns:
        The validated port number

    Raises:
        ValidationError: If port is not in the proxy range
    """
    port = _to_int(value, "proxy port")
    if not MIN_PROXY_PORT <= port <= MAX_PROXY_PORT:
        raise ValidationError(
            f"Invalid proxy port: {port}",
            hint=f"Proxy port must be between {MIN_PROXY_PORT} and {MAX_PROXY_PORT}",
        )
    return port


def validate_port(value: Union[int, str]) -> int:
    """Validate a destination port number.

    Raises:
        ValidationError: If port is out of valid range
    """
    port = _to_int(value, "port")
    if not MIN_PORT <= port <= MAX_PORT:
        raise ValidationError(
            f"Invalid port number: {port}",
            hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
        )
    return port


def validate_ipv4(value: str) -> str:
    """Validate a dotted-quad IPv4 address.

    Leading zeros are accepted but normalized away, so the returned
    string is the canonical form written into rules.

    Raises:
        ValidationError: If the address is malformed
    """
    match = IPV4_PATTERN.match(value.strip())
    if not match:
        raise ValidationError(
            f"Invalid IPv4 address: '{value}'",
            hint="Use four dot-separated numbers, e.g. 10.0.0.5",
        )

    octets = [int(o) for o in match.groups()]
    bad = [o for o in octets if o > 255]
    if bad:
        raise ValidationError(
            f"Invalid IPv4 address: '{value}'",
            hint="Each octet must be between 0 and 255",
            details=[f"Out of range: {', '.join(str(o) for o in bad)}"],
        )

    return ".".join(str(o) for o in octets)


def parse_target(value: str) -> tuple[str, int]:
    """Parse an ``ip:port`` proxy target.

    Returns:
        Tuple of (canonical address, port)

    Raises:
        ValidationError: If the target is malformed
    """
    address, sep, port = value.strip().rpartition(":")
    if not sep or not address or not port:
        raise ValidationError(
            f"Invalid proxy target: '{value}'",
            hint="Use the form IP:PORT, e.g. 10.0.0.5:8080",
        )
    return validate_ipv4(address), validate_port(port)
