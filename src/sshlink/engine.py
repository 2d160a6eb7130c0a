"""
Transport engine: one authenticated asyncssh connection.

The engine owns the TCP socket, the SSH transport and its authenticated
state. It performs the three connection stages separately so that each
failure maps to its own error type:

    socket connect   -> SocketError
    handshake        -> HandshakeError
    authentication   -> AuthError

Channels are opened from an authenticated engine and returned as
ChannelHandle objects; the caller owns and closes them.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import socket
from typing import Any

import asyncssh
from asyncssh.constants import MSG_GLOBAL_REQUEST, OPEN_REQUEST_SESSION_FAILED
from asyncssh.packet import Boolean, String

from sshlink.agent import agent_keys
from sshlink.channel import ChannelHandle, ChannelMode, ScpRecvChannel, ScpSendChannel
from sshlink.config import SessionConfig
from sshlink.errors import (
    AgentError,
    AuthError,
    ChannelOpenError,
    DisconnectReason,
    ErrorContext,
    ExecError,
    HandshakeError,
    SocketError,
    SSHError,
    TransportError,
)
from sshlink.events import EventEmitter, EventType
from sshlink.scp import sink_command, source_command

logger = logging.getLogger(__name__)

KEEPALIVE_REQUEST = "keepalive@openssh.com"
SHELL_TERM_TYPE = "xterm"
SHELL_TERM_SIZE = (80, 24)


class _EngineClient(asyncssh.SSHClient):
    """Tracks the authenticated flag and transport loss for one connection."""

    def __init__(self) -> None:
        self.authenticated = False
        self.closed = False
        self.close_error: Exception | None = None

    def auth_completed(self) -> None:
        self.authenticated = True

    def connection_lost(self, exc: Exception | None) -> None:
        self.closed = True
        self.close_error = exc


class TransportEngine:
    """
    An SSH transport to one host, authenticated at most once.

    Usage:
        engine = TransportEngine("example.com", 22, SessionConfig(), emitter)
        await engine.connect_password("alice", "secret")
        async with await engine.open_command("uname -a") as channel:
            output = await channel.read_all()
        await engine.close()
    """

    def __init__(
        self,
        host: str,
        port: int,
        config: SessionConfig,
        emitter: EventEmitter,
    ) -> None:
        self._host = host
        self._port = port
        self._config = config
        self._emitter = emitter
        self._username: str | None = None
        self._auth_method: str | None = None
        self._conn: asyncssh.SSHClientConnection | None = None
        self._client: _EngineClient | None = None
        self._disconnect_reason = DisconnectReason.NORMAL

    @property
    def authenticated(self) -> bool:
        """
        True once the transport has completed authentication.

        A transport that dies later stays authenticated; its next operation
        fails with TransportError instead.
        """
        return self._client is not None and self._client.authenticated

    @property
    def username(self) -> str | None:
        return self._username

    def context(self, **kwargs: Any) -> ErrorContext:
        """Build an ErrorContext describing this transport."""
        return ErrorContext(
            host=self._host,
            port=self._port,
            username=self._username,
            auth_method=self._auth_method,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect_password(self, username: str, password: str) -> None:
        """
        Connect and authenticate with a password.

        Raises:
            SocketError: TCP connect failed
            HandshakeError: SSH negotiation failed
            AuthError: Password rejected
        """
        await self._connect(
            username,
            "password",
            {"password": password, "client_keys": [], "agent_path": None},
        )

    async def connect_agent(self, username: str, agent_path: str | None = None) -> None:
        """
        Connect and authenticate with the keys held by the local agent.

        The agent connection stays open for the duration of authentication
        (it signs the server's challenge) and is closed afterwards.

        Raises:
            AgentUnavailableError: No agent reachable
            AuthError: Agent has no identities, or none was accepted
        """
        self._username = username
        self._auth_method = "agent"
        try:
            async with agent_keys(agent_path) as keys:
                if not keys:
                    error = AuthError(
                        "SSH agent has no identities",
                        context=self.context(),
                    )
                    self._emit_auth_failure(error, 0.0)
                    raise error
                await self._connect(
                    username,
                    "agent",
                    {"client_keys": keys, "password": None, "agent_path": None},
                )
        except AgentError as e:
            self._emit_auth_failure(e, 0.0)
            raise

    async def _connect(
        self,
        username: str,
        method: str,
        auth_options: dict[str, Any],
    ) -> None:
        assert self._conn is None, "Transport already established"
        self._username = username
        self._auth_method = method

        connect_data: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "username": username,
        }
        self._emitter.emit(EventType.CONNECT, status="initiating", **connect_data)

        sock = await self._connect_socket()

        options = self._config.to_asyncssh_options()
        options.update(auth_options)
        options["username"] = username
        # Never pick up ~/.ssh/config; everything comes from SessionConfig
        options["config"] = None

        client = _EngineClient()
        loop = asyncio.get_running_loop()
        auth_start_ms = loop.time() * 1000
        try:
            conn = await asyncssh.connect(
                self._host,
                self._port,
                sock=sock,
                client_factory=lambda: client,
                **options,
            )
        except asyncssh.PermissionDenied as e:
            sock.close()
            error = AuthError(
                f"Authentication failed: {e}",
                context=self.context(original_error=str(e)),
            )
            self._emit_auth_failure(error, loop.time() * 1000 - auth_start_ms)
            raise error from e
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            sock.close()
            error = HandshakeError(
                f"SSH handshake with {self._host}:{self._port} failed: "
                f"{str(e) or type(e).__name__}",
                context=self.context(original_error=str(e) or type(e).__name__),
            )
            self._emit_error(error, DisconnectReason.HANDSHAKE_FAILURE)
            raise error from e

        if not client.authenticated:
            conn.close()
            await conn.wait_closed()
            error = AuthError(
                "Transport is not authenticated after a successful auth call",
                context=self.context(),
            )
            self._emit_auth_failure(error, loop.time() * 1000 - auth_start_ms)
            raise error

        self._conn = conn
        self._client = client

        self._emitter.emit(
            EventType.AUTH,
            status="success",
            method=method,
            username=username,
            duration_ms=loop.time() * 1000 - auth_start_ms,
        )
        self._emitter.emit(
            EventType.CONNECT,
            status="connected",
            auth_method=method,
            keepalive=self._config.keepalive.to_dict() if self._config.keepalive else None,
            **connect_data,
        )
        logger.debug("Authenticated to %s:%d as %s (%s)", self._host, self._port, username, method)

    async def _connect_socket(self) -> socket.socket:
        """Open the TCP connection, bounded by connect_timeout."""
        loop = asyncio.get_running_loop()
        create = functools.partial(
            socket.create_connection,
            (self._host, self._port),
            timeout=self._config.connect_timeout,
        )
        try:
            sock = await loop.run_in_executor(None, create)
        except OSError as e:
            error = SocketError(
                f"Cannot connect to {self._host}:{self._port}: {e}",
                context=self.context(original_error=str(e)),
            )
            self._emit_error(error, DisconnectReason.NETWORK_ERROR)
            raise error from e

        return sock

    def _emit_error(self, error: SSHError, reason: DisconnectReason) -> None:
        # An AgentError's own reason takes precedence
        self._emitter.emit(EventType.ERROR, **{"reason": reason.value, **error.to_dict()})

    def _emit_auth_failure(self, error: SSHError, duration_ms: float) -> None:
        self._emitter.emit(
            EventType.AUTH,
            status="failed",
            method=self._auth_method,
            username=self._username,
            duration_ms=duration_ms,
            error_type=error.error_type,
            error_message=str(error),
        )
        self._emit_error(error, DisconnectReason.AUTH_FAILURE)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def _require_connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is None or self._client is None or self._client.closed:
            raise TransportError(
                f"Transport to {self._host}:{self._port} is not available",
                context=self.context(original_error=_describe(self._client)),
            )
        return self._conn

    async def _open_process(
        self,
        mode: ChannelMode,
        command: str | None,
        context: ErrorContext,
        **kwargs: Any,
    ) -> asyncssh.SSHClientProcess:
        conn = self._require_connection()
        if command is not None:
            kwargs["command"] = command
        try:
            return await conn.create_process(encoding=None, **kwargs)
        except (asyncssh.Error, OSError) as e:
            context.original_error = str(e) or type(e).__name__
            if self._client is not None and self._client.closed:
                raise TransportError(
                    f"Transport to {self._host}:{self._port} lost: {context.original_error}",
                    context=context,
                ) from e
            if not isinstance(e, asyncssh.ChannelOpenError):
                raise ChannelOpenError(
                    f"Could not open {mode.value} channel: {context.original_error}",
                    context=context,
                ) from e
            if e.code == OPEN_REQUEST_SESSION_FAILED and mode != ChannelMode.SHELL:
                raise ExecError(
                    f"Remote refused to execute {command!r}: {e.reason}",
                    context=context,
                ) from e
            raise ChannelOpenError(
                f"Remote refused {mode.value} channel: {e.reason}",
                context=context,
            ) from e

    async def open_command(self, command: str) -> ChannelHandle:
        """Open a command channel and request execution of command."""
        context = self.context(extra={"command": command})
        process = await self._open_process(ChannelMode.COMMAND, command, context)
        return ChannelHandle(ChannelMode.COMMAND, process, context)

    async def open_shell(self) -> ChannelHandle:
        """Open a session channel with an xterm PTY and request a shell."""
        context = self.context()
        process = await self._open_process(
            ChannelMode.SHELL,
            None,
            context,
            term_type=SHELL_TERM_TYPE,
            term_size=SHELL_TERM_SIZE,
        )
        return ChannelHandle(ChannelMode.SHELL, process, context)

    async def open_scp_send(self, remote_path: str) -> ScpSendChannel:
        """Start ``scp -t`` on the remote for an upload to remote_path."""
        context = self.context(remote_path=remote_path)
        process = await self._open_process(
            ChannelMode.SCP_SEND, sink_command(remote_path), context,
        )
        return ScpSendChannel(process, context)

    async def open_scp_recv(self, remote_path: str) -> ScpRecvChannel:
        """Start ``scp -p -f`` on the remote for a download of remote_path."""
        context = self.context(remote_path=remote_path)
        process = await self._open_process(
            ChannelMode.SCP_RECV, source_command(remote_path), context,
        )
        return ScpRecvChannel(process, context)

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    def configure_keepalive(self, interval: int, count_max: int) -> None:
        """Set the periodic keepalive; interval 0 disables it."""
        conn = self._require_connection()
        conn.set_keepalive(interval, count_max)

    async def send_keepalive(self, want_reply: bool, timeout: float) -> None:
        """
        Send one keepalive request now.

        The request's want-reply flag is want_reply. When set, the request
        waits up to timeout seconds for the peer's answer; either a success
        or a failure reply proves the peer alive. When clear, the peer is
        not asked to answer and nothing is awaited.

        Raises:
            TransportError: The transport is gone or the peer did not answer
        """
        conn = self._require_connection()
        if not want_reply:
            _send_global_request(conn, KEEPALIVE_REQUEST)
            return

        try:
            await asyncio.wait_for(_make_global_request(conn, KEEPALIVE_REQUEST), timeout)
        except asyncio.TimeoutError as e:
            self._disconnect_reason = DisconnectReason.NETWORK_ERROR
            raise TransportError(
                f"No keepalive reply from {self._host}:{self._port} within {timeout}s",
                context=self.context(original_error="timeout"),
            ) from e
        except (asyncssh.Error, OSError) as e:
            self._disconnect_reason = DisconnectReason.NETWORK_ERROR
            raise TransportError(
                f"Keepalive to {self._host}:{self._port} failed: {e}",
                context=self.context(original_error=str(e)),
            ) from e

        if self._client is None or self._client.closed:
            raise TransportError(
                f"Transport to {self._host}:{self._port} closed during keepalive",
                context=self.context(original_error=_describe(self._client)),
            )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """
        Close the transport. Safe to call more than once.

        The DISCONNECT event's reason is network_error when the transport
        had already been lost or stopped answering keepalives.
        """
        conn, self._conn = self._conn, None
        if conn is None:
            return

        if self._client is not None and self._client.closed:
            self._disconnect_reason = DisconnectReason.NETWORK_ERROR

        self._emitter.emit(
            EventType.DISCONNECT,
            host=self._host,
            port=self._port,
            reason=self._disconnect_reason.value,
        )
        conn.close()
        await conn.wait_closed()
        logger.debug("Closed transport to %s:%d", self._host, self._port)


# asyncssh sends keepalive@openssh.com only from its idle timer, so the
# immediate request goes through the connection's private global request
# helpers. They are private API; pyproject.toml pins asyncssh below 3.0.

def _send_global_request(conn: asyncssh.SSHClientConnection, request: str) -> None:
    conn.send_packet(MSG_GLOBAL_REQUEST, String(request), Boolean(False))


async def _make_global_request(conn: asyncssh.SSHClientConnection, request: str) -> None:
    await conn._make_global_request(request)


def _describe(client: _EngineClient | None) -> str:
    if client is None:
        return "not connected"
    if client.close_error is not None:
        return str(client.close_error) or type(client.close_error).__name__
    return "connection closed"
