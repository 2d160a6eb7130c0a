"""sshlink: blocking SSH sessions for commands and SCP file transfer."""

__version__ = "0.1.0"

from sshlink.agent import Identity, fetch_agent_identities, list_agent_identities
from sshlink.channel import ChannelHandle, ChannelMode, TransferState
from sshlink.config import DEFAULT_SCP_MODE, SessionConfig
from sshlink.errors import (
    AgentError,
    AgentProtocolError,
    AgentUnavailableError,
    AlreadyConnectedError,
    AuthError,
    ChannelClosedError,
    ChannelError,
    ChannelIOError,
    ChannelOpenError,
    DisconnectReason,
    ErrorContext,
    ExecError,
    HandshakeError,
    LocalIOError,
    NotAuthenticatedError,
    SessionClosedError,
    SocketError,
    SSHError,
    TransferError,
    TransportError,
)
from sshlink.events import Event, EventCollector, EventEmitter, EventType, read_jsonl_events
from sshlink.keepalive import KeepaliveConfig
from sshlink.scp import ScpFileStat
from sshlink.session import Closed, Connected, Disconnected, Session
from sshlink.validation import (
    validate_hostname,
    validate_port,
    validate_remote_path,
    validate_username,
)

__all__ = [
    # Session
    "Session",
    "Disconnected",
    "Connected",
    "Closed",
    # Config
    "SessionConfig",
    "KeepaliveConfig",
    "DEFAULT_SCP_MODE",
    # Agent
    "Identity",
    "fetch_agent_identities",
    "list_agent_identities",
    # Channels and transfers
    "ChannelHandle",
    "ChannelMode",
    "TransferState",
    "ScpFileStat",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    "read_jsonl_events",
    # Errors
    "SSHError",
    "ErrorContext",
    "DisconnectReason",
    "SocketError",
    "HandshakeError",
    "TransportError",
    "AuthError",
    "AgentError",
    "AgentUnavailableError",
    "AgentProtocolError",
    "NotAuthenticatedError",
    "SessionClosedError",
    "AlreadyConnectedError",
    "ChannelError",
    "ChannelOpenError",
    "ExecError",
    "ChannelIOError",
    "TransferError",
    "ChannelClosedError",
    "LocalIOError",
    # Validation
    "validate_hostname",
    "validate_port",
    "validate_remote_path",
    "validate_username",
]
