"""
SSH keepalive configuration.

The Session's transport sends keepalive@openssh.com global requests every
``interval_sec`` seconds of inactivity; after ``max_count`` unanswered
keepalives the transport is declared dead and closed.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sshlink.validation import validate_interval


@dataclass
class KeepaliveConfig:
    """
    Periodic keepalive applied when the transport is established.

    - interval_sec: Seconds between keepalives; 0 disables them
    - max_count: Unanswered keepalives tolerated before disconnect

    Periodic keepalives always ask for a reply, since an unanswered one is
    how a dead peer is detected. Session.set_keepalive() changes the
    interval later and sends a one-off request.

    Usage:
        # Drop a dead peer after about 20s
        config = SessionConfig(keepalive=KeepaliveConfig(interval_sec=10, max_count=2))
    """
    interval_sec: int = 30
    max_count: int = 3

    def __post_init__(self) -> None:
        validate_interval(self.interval_sec)
        assert self.max_count > 0, \
            f"max_count must be positive, got {self.max_count}"

    @property
    def enabled(self) -> bool:
        return self.interval_sec > 0

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Options for asyncssh.connect()."""
        return {
            "keepalive_interval": self.interval_sec,
            "keepalive_count_max": self.max_count,
        }

    def to_dict(self) -> dict[str, Any]:
        """Fields recorded in the CONNECT event."""
        return {
            "interval_sec": self.interval_sec,
            "max_count": self.max_count,
            "enabled": self.enabled,
        }
