"""
Input validation for Session parameters.

Hostnames, usernames and remote paths end up in SSH requests (and remote
paths in the command line of the remote scp process), so control characters
and shell metacharacters are rejected before any I/O happens.
"""

import ipaddress
import re
from typing import Final

MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_LABEL_LENGTH: Final[int] = 63
MAX_USERNAME_LENGTH: Final[int] = 256
MAX_UINT32: Final[int] = 2**32 - 1

# Never valid in a hostname
DANGEROUS_CHARS: Final[frozenset[str]] = frozenset(
    "\x00"
    "\n\r"
    "`$(){}[]|;&<>\\'\""
    "\t"
)

# Never valid in a username. Directory accounts use '\', '@' and '$'
# (DOMAIN\user, user@realm, host$), so those are allowed.
USERNAME_FORBIDDEN_CHARS: Final[frozenset[str]] = DANGEROUS_CHARS - frozenset("\\$")

# Never valid in a remote path: they would break the SCP header line
PATH_FORBIDDEN_CHARS: Final[frozenset[str]] = frozenset("\x00\n\r")

_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$"
)

_USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_.@\\$-]*$"
)


def _describe_char(char: str) -> str:
    return {
        "\x00": "null byte",
        "\n": "newline",
        "\r": "carriage return",
        "\t": "tab",
    }.get(char, repr(char))


def _check_chars(value: str, field_name: str, forbidden: frozenset[str]) -> None:
    """
    Raise ValueError if value contains any forbidden character.
    """
    for char in value:
        if char in forbidden:
            raise ValueError(
                f"{field_name} contains forbidden character: {_describe_char(char)}"
            )


def validate_hostname(hostname: str) -> str:
    """
    Validate and normalise a hostname or IP literal.

    Accepts IPv4/IPv6 literals as-is. Otherwise validates per RFC 952/1123:
    at most 253 characters, dot-separated labels of at most 63 alphanumeric
    characters or hyphens, no leading or trailing hyphen.

    Returns:
        The normalised hostname (lowercase)

    Raises:
        ValueError: If the hostname is invalid
    """
    if not isinstance(hostname, str):
        raise ValueError(f"hostname must be a string, got {type(hostname).__name__}")

    if not hostname:
        raise ValueError("hostname must not be empty")

    try:
        return str(ipaddress.ip_address(hostname))
    except ValueError:
        pass

    _check_chars(hostname, "hostname", DANGEROUS_CHARS)

    # A single trailing dot marks a fully qualified name and is kept
    name = hostname[:-1] if hostname.endswith(".") else hostname

    if len(name) > MAX_HOSTNAME_LENGTH:
        raise ValueError(
            f"hostname exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(name)})"
        )

    for label in name.split("."):
        if not label:
            raise ValueError(f"hostname has an empty label: {hostname!r}")

        if len(label) > MAX_LABEL_LENGTH:
            raise ValueError(
                f"hostname label '{label}' exceeds maximum length of "
                f"{MAX_LABEL_LENGTH} characters (got {len(label)})"
            )

        if not _LABEL_PATTERN.match(label):
            if label.startswith("-") or label.endswith("-"):
                raise ValueError(
                    f"hostname label '{label}' must not start or end with a hyphen"
                )
            raise ValueError(
                f"hostname label '{label}' contains invalid characters "
                "(only alphanumeric and hyphens allowed)"
            )

    return hostname.lower()


def validate_username(username: str) -> str:
    """
    Validate a username of at most 256 characters.

    POSIX names and directory accounts (DOMAIN\\user, user@realm) pass.

    Raises:
        ValueError: If the username is invalid
    """
    if not isinstance(username, str):
        raise ValueError(f"username must be a string, got {type(username).__name__}")

    if not username:
        raise ValueError("username must not be empty")

    _check_chars(username, "username", USERNAME_FORBIDDEN_CHARS)

    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters "
            f"(got {len(username)})"
        )

    if not _USERNAME_PATTERN.match(username):
        raise ValueError(
            f"username must start with a letter or underscore and contain only "
            f"alphanumerics, '.', '_', '-', '@', '\\' and '$', got {username!r}"
        )

    return username


def validate_port(port: int) -> int:
    """
    Validate a TCP port number (1-65535).

    Raises:
        ValueError: If the port is invalid
    """
    # bool is a subclass of int
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"port must be an integer, got {type(port).__name__}")

    if not 1 <= port <= 65535:
        raise ValueError(f"port must be between 1 and 65535, got {port}")

    return port


def validate_interval(interval: int) -> int:
    """
    Validate a keepalive interval in seconds as an unsigned 32-bit integer.

    Zero is valid and means "periodic keepalive disabled".

    Raises:
        ValueError: If the interval is negative, too large or not an int
    """
    if isinstance(interval, bool) or not isinstance(interval, int):
        raise ValueError(
            f"keepalive interval must be an integer, got {type(interval).__name__}"
        )

    if not 0 <= interval <= MAX_UINT32:
        raise ValueError(
            f"keepalive interval must be between 0 and {MAX_UINT32}, got {interval}"
        )

    return interval


def validate_scp_mode(mode: int) -> int:
    """
    Validate a file permission mode for an SCP upload (0 to 0o7777).

    Raises:
        ValueError: If the mode is out of range
    """
    if isinstance(mode, bool) or not isinstance(mode, int):
        raise ValueError(f"mode must be an integer, got {type(mode).__name__}")

    if not 0 <= mode <= 0o7777:
        raise ValueError(f"mode must be between 0 and 0o7777, got {oct(mode)}")

    return mode


def validate_remote_path(path: str) -> str:
    """
    Validate a remote path for SCP.

    Raises:
        ValueError: If the path is empty or contains NUL/CR/LF
    """
    if not isinstance(path, str):
        raise ValueError(f"remote path must be a string, got {type(path).__name__}")

    if not path:
        raise ValueError("remote path must not be empty")

    _check_chars(path, "remote path", PATH_FORBIDDEN_CHARS)
    return path
