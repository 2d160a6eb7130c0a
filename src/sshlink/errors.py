"""
SSH error taxonomy with structured data for JSONL logging.

Every failure the library can surface at runtime maps to one of these types,
so callers can decide whether to retry, reconnect or abort.

Error hierarchy:
- SSHError (base)
  - SocketError (TCP connect failed: refused, unreachable, DNS, timeout)
  - HandshakeError (protocol negotiation failed after the socket opened)
  - AuthError (credentials rejected, or transport left unauthenticated)
    - AgentError
      - AgentUnavailableError (no agent reachable)
      - AgentProtocolError (agent replied with garbage)
  - NotAuthenticatedError (channel operation without a transport)
    - SessionClosedError
  - AlreadyConnectedError
  - TransportError (keepalive request failed, operation timed out)
  - ChannelError
    - ChannelOpenError (remote refused a channel)
      - ExecError (remote refused the exec request)
    - ChannelIOError (read/write failed on an open channel)
      - TransferError (SCP stream failed or ended early)
    - ChannelClosedError (I/O on a handle that was already closed)
  - LocalIOError (local file could not be read)
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class DisconnectReason(str, Enum):
    """
    Reasons for SSH disconnection.

    Used in DISCONNECT events to classify why a transport ended.
    """
    NORMAL = "normal"
    AUTH_FAILURE = "auth_failure"
    HANDSHAKE_FAILURE = "handshake_failure"
    NETWORK_ERROR = "network_error"


@dataclass
class ErrorContext:
    """
    Structured context for SSH errors.

    Carries what is needed to debug the failure and to write it as a
    JSONL event.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    remote_path: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate invariants after initialisation."""
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Flatten to a dict: unset fields dropped, extra merged in."""
        named = [f.name for f in fields(self) if f.name != "extra"]
        clash = self.extra.keys() & set(named)
        assert not clash, f"extra keys shadow ErrorContext fields: {sorted(clash)}"
        flat = {name: getattr(self, name) for name in named}
        return {
            **{k: v for k, v in flat.items() if v is not None},
            **self.extra,
        }


class SSHError(Exception):
    """
    Base exception for all SSH-related errors.

    All SSH errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SocketError(SSHError):
    """TCP connection to host:port failed (refused, unreachable, DNS, timeout)."""
    pass


class HandshakeError(SSHError):
    """
    SSH protocol negotiation failed after the socket was established.

    Raised for key exchange / cipher / MAC mismatches, host key rejection,
    and peers that drop the connection before authentication starts.
    """
    pass


class TransportError(SSHError):
    """The established transport failed (dead peer, keepalive failure, timeout)."""
    pass


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthError(SSHError):
    """
    Authentication failed.

    This is raised when:
    - The password is incorrect
    - None of the agent's keys is accepted by the server
    - The agent has no identities at all
    - The transport reports itself unauthenticated after a nominally
      successful authentication call
    """
    pass


class AgentError(AuthError):
    """
    SSH agent communication failed.

    Carries a short machine-readable ``reason`` in the context.
    """

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)

    @property
    def reason(self) -> str | None:
        return self.context.extra.get("reason")


class AgentUnavailableError(AgentError):
    """No agent is reachable (SSH_AUTH_SOCK unset, socket missing, refused)."""
    pass


class AgentProtocolError(AgentError):
    """The agent answered, but the reply could not be parsed."""
    pass


# ---------------------------------------------------------------------------
# Session State Errors
# ---------------------------------------------------------------------------

class NotAuthenticatedError(SSHError):
    """
    A channel operation was attempted on a Session without an
    authenticated transport.

    No network I/O is performed before this is raised.
    """
    pass


class SessionClosedError(NotAuthenticatedError):
    """The Session was closed; construct a new one to reconnect."""
    pass


class AlreadyConnectedError(SSHError):
    """An authentication call was made on a Session that is already connected."""
    pass


# ---------------------------------------------------------------------------
# Channel Errors
# ---------------------------------------------------------------------------

class ChannelError(SSHError):
    """Base class for failures on a single channel."""
    pass


class ChannelOpenError(ChannelError):
    """
    The remote refused or failed to establish a channel.

    Covers command, shell, SCP send and SCP receive channels, including an
    SCP peer that reports an error before any data has been transferred.
    """
    pass


class ExecError(ChannelOpenError):
    """The remote accepted the channel but refused the exec request."""
    pass


class ChannelIOError(ChannelError):
    """A read or write on an open channel failed or ended early."""
    pass


class TransferError(ChannelIOError):
    """An SCP transfer failed or terminated early."""
    pass


class ChannelClosedError(ChannelError):
    """I/O was attempted on a channel handle that is already closed."""
    pass


# ---------------------------------------------------------------------------
# Local Errors
# ---------------------------------------------------------------------------

class LocalIOError(SSHError):
    """Local filesystem access failed during an upload."""

    def __init__(
        self,
        message: str,
        local_path: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if local_path:
            context.extra["local_path"] = local_path
        super().__init__(message, context)
