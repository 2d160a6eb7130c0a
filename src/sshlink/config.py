"""
Session configuration.

Provides:
- SessionConfig: timeouts, SCP upload mode, text encoding, host key
  checking and keepalive applied to every Session operation
- DEFAULT_SCP_MODE: permission mode for uploads (owner rw, group/other r)
"""
from __future__ import annotations

import codecs
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sshlink.keepalive import KeepaliveConfig
from sshlink.platform import expand_path
from sshlink.validation import validate_scp_mode

DEFAULT_SCP_MODE = 0o644
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_KEEPALIVE_TIMEOUT = 10.0


@dataclass
class SessionConfig:
    """
    Configuration shared by all operations of one Session.

    Attributes:
        connect_timeout: Seconds allowed for the TCP connect, and again for
            handshake plus authentication
        operation_timeout: Seconds allowed for each channel operation
            (None waits indefinitely)
        keepalive_timeout: Seconds to wait for a keepalive reply
        scp_mode: Permission mode announced for uploads (default 0o644)
        encoding: Encoding used to decode command output
        known_hosts: known_hosts file(s) to verify the server key against;
            None disables host key verification
        keepalive: Keepalive applied when the transport is established

    Usage:
        config = SessionConfig(connect_timeout=5.0, scp_mode=0o600)
        with Session("example.com", 22, config=config) as session:
            ...
    """
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    operation_timeout: float | None = None
    keepalive_timeout: float = DEFAULT_KEEPALIVE_TIMEOUT
    scp_mode: int = DEFAULT_SCP_MODE
    encoding: str = "utf-8"
    known_hosts: Path | str | list[Path | str] | None = None
    keepalive: KeepaliveConfig | None = None
    extra_options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration."""
        assert self.connect_timeout > 0, \
            f"connect_timeout must be positive, got {self.connect_timeout}"
        if self.operation_timeout is not None:
            assert self.operation_timeout > 0, \
                f"operation_timeout must be positive, got {self.operation_timeout}"
        assert self.keepalive_timeout > 0, \
            f"keepalive_timeout must be positive, got {self.keepalive_timeout}"

        validate_scp_mode(self.scp_mode)

        # Raises LookupError for unknown codecs
        codecs.lookup(self.encoding)

    def known_hosts_option(self) -> str | list[str] | None:
        """Return known_hosts in the form asyncssh expects."""
        if self.known_hosts is None:
            return None
        if isinstance(self.known_hosts, list):
            return [str(expand_path(p)) for p in self.known_hosts]
        return str(expand_path(self.known_hosts))

    def to_asyncssh_options(self) -> dict[str, Any]:
        """
        Build the asyncssh.connect() options derived from this config.

        extra_options are passed through last and win over derived values.
        """
        options: dict[str, Any] = {
            "connect_timeout": self.connect_timeout,
            "known_hosts": self.known_hosts_option(),
        }
        if self.keepalive is not None:
            options.update(self.keepalive.to_asyncssh_options())
        options.update(self.extra_options)
        return options
