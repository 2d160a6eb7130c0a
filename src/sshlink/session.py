"""
Session: a blocking SSH client bound to one host.

A Session moves through three states:

    Disconnected --connect_with_*()--> Connected(engine) --close()--> Closed

Construction does no I/O. The first authentication call starts a private
event loop in a daemon thread; every public method then submits a
coroutine to that loop and blocks until it finishes. Operations on one
Session run one at a time, in the order they were called.

Each channel operation opens a fresh channel, drives it to completion and
closes it before returning, on success and on failure.

Usage:
    with Session("example.com", 22) as session:
        session.connect_with_password("alice", "secret")
        print(session.run_command("uname -a"))
        session.upload_file("report.csv", "/tmp/report.csv")
        data, stat = session.download_file("/tmp/report.csv")
"""
from __future__ import annotations

import asyncio
import functools
import logging
import threading
import weakref
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine, TypeVar, Union

from sshlink.channel import TransferState
from sshlink.config import SessionConfig
from sshlink.engine import TransportEngine
from sshlink.errors import (
    AlreadyConnectedError,
    ChannelIOError,
    ErrorContext,
    LocalIOError,
    NotAuthenticatedError,
    SessionClosedError,
    SSHError,
    TransportError,
)
from sshlink.events import EventCollector, EventEmitter, EventType
from sshlink.keepalive import KeepaliveConfig
from sshlink.scp import BLOCK_SIZE, ScpFileStat, record_name
from sshlink.validation import (
    validate_hostname,
    validate_interval,
    validate_port,
    validate_remote_path,
    validate_scp_mode,
    validate_username,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on waiting for the loop thread to stop during close()
LOOP_SHUTDOWN_TIMEOUT = 10.0


@dataclass(frozen=True)
class Disconnected:
    """No transport yet: nothing has connected, or every attempt failed."""


@dataclass(frozen=True)
class Connected:
    """An authenticated transport owned by the Session."""
    engine: TransportEngine


@dataclass(frozen=True)
class Closed:
    """close() was called; the Session cannot be reused."""


SessionState = Union[Disconnected, Connected, Closed]


def _read_local_file(path: Path) -> bytes:
    """Read a local file to EOF in BLOCK_SIZE chunks."""
    data = bytearray()
    try:
        with open(path, "rb") as f:
            for chunk in iter(functools.partial(f.read, BLOCK_SIZE), b""):
                data += chunk
    except OSError as e:
        raise LocalIOError(
            f"Cannot read local file {path}: {e.strerror or e}",
            local_path=str(path),
            context=ErrorContext(original_error=str(e)),
        ) from e
    return bytes(data)


def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
    asyncio.set_event_loop(loop)
    loop.run_forever()


def _teardown(
    host: str,
    port: int,
    loop: asyncio.AbstractEventLoop,
    thread: threading.Thread,
    emitter: EventEmitter,
    engines: list[TransportEngine],
) -> None:
    """
    Close a Session's transport, loop thread and event log.

    Runs exactly once: from close(), or when a Session that was never
    closed is garbage collected. Holds no reference to the Session itself.
    """
    if threading.current_thread() is thread:
        # Collected on its own loop thread: nothing can be awaited here
        emitter.close()
        loop.call_soon(loop.stop)
        return

    try:
        for engine in engines:
            future = asyncio.run_coroutine_threadsafe(engine.close(), loop)
            future.result(timeout=LOOP_SHUTDOWN_TIMEOUT)
    finally:
        emitter.close()
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=LOOP_SHUTDOWN_TIMEOUT)
        if thread.is_alive():
            logger.warning("Event loop thread for %s:%d did not stop", host, port)
        else:
            loop.close()


class Session:
    """
    One logical SSH connection to host:port.

    Args:
        host: Hostname or IP address
        port: SSH port (1..65535)
        config: Timeouts, SCP mode, encoding, host key checking, keepalive
        event_collector: Optional in-memory collector for events
        event_log_path: Optional JSONL file events are appended to

    Raises:
        ValueError: host or port is malformed
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        config: SessionConfig | None = None,
        event_collector: EventCollector | None = None,
        event_log_path: Path | str | None = None,
    ) -> None:
        self._host = validate_hostname(host)
        self._port = validate_port(port)
        self._config = config or SessionConfig()
        self._event_collector = event_collector
        self._event_log_path = event_log_path
        self._emitter: EventEmitter | None = None

        self._state: SessionState = Disconnected()
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._engines: list[TransportEngine] = []
        self._finalizer: weakref.finalize | None = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    def __repr__(self) -> str:
        return f"Session({self._host!r}, {self._port}, state={type(self._state).__name__})"

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Event loop thread
    # ------------------------------------------------------------------

    def _ensure_loop(self) -> None:
        if self._loop is not None:
            return
        self._emitter = EventEmitter(
            collector=self._event_collector,
            jsonl_path=self._event_log_path,
            host=self._host,
            port=self._port,
        )
        self._loop = asyncio.new_event_loop()
        thread = threading.Thread(
            target=_run_loop,
            args=(self._loop,),
            daemon=True,
            name=f"sshlink-{self._host}:{self._port}",
        )
        thread.start()
        self._finalizer = weakref.finalize(
            self, _teardown,
            self._host, self._port, self._loop, thread, self._emitter, self._engines,
        )

    def _run_sync(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run a coroutine on the Session loop and wait for its result."""
        assert self._loop is not None, "Event loop not running"
        future: Future[T] = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    async def _bounded(self, coro: Coroutine[Any, Any, T], operation: str) -> T:
        """Apply operation_timeout, if configured, to a channel operation."""
        timeout = self._config.operation_timeout
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            error = TransportError(
                f"{operation} on {self._host}:{self._port} timed out after {timeout}s",
                context=ErrorContext(
                    host=self._host,
                    port=self._port,
                    original_error="timeout",
                ),
            )
            assert self._emitter is not None
            self._emitter.emit(EventType.ERROR, operation=operation, **error.to_dict())
            raise error from e

    # ------------------------------------------------------------------
    # State checks
    # ------------------------------------------------------------------

    def _check_not_closed(self) -> None:
        if isinstance(self._state, Closed):
            raise SessionClosedError(
                f"Session to {self._host}:{self._port} is closed",
                context=ErrorContext(host=self._host, port=self._port),
            )

    def _require_engine(self, operation: str) -> TransportEngine:
        self._check_not_closed()
        if not isinstance(self._state, Connected):
            raise NotAuthenticatedError(
                f"{operation} requires an authenticated session to {self._host}:{self._port}",
                context=ErrorContext(host=self._host, port=self._port),
            )
        return self._state.engine

    def _record_failure(self, data: dict[str, Any], error: SSHError) -> None:
        data["status"] = "failed"
        data["error_type"] = error.error_type
        data["error_message"] = str(error)
        assert self._emitter is not None
        self._emitter.emit(EventType.ERROR, **error.to_dict())

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def is_authenticated(self) -> bool:
        """True if an authenticated transport is present. Never blocks."""
        state = self._state
        return isinstance(state, Connected) and state.engine.authenticated

    def connect_with_password(self, username: str, password: str) -> None:
        """
        Connect, handshake and authenticate with a password.

        Raises:
            SocketError: TCP connect failed (refused, unreachable, DNS, timeout)
            HandshakeError: SSH negotiation failed
            AuthError: Credentials rejected
            AlreadyConnectedError: The Session is already authenticated
            SessionClosedError: The Session was closed
        """
        username = validate_username(username)
        self._connect(username, lambda engine: engine.connect_password(username, password))

    def connect_with_agent(self, username: str, agent_path: str | Path | None = None) -> None:
        """
        Connect, handshake and authenticate with keys from the SSH agent.

        Args:
            username: Remote user
            agent_path: Agent socket; defaults to SSH_AUTH_SOCK

        Raises:
            SocketError, HandshakeError: As for connect_with_password
            AgentUnavailableError: No agent reachable
            AuthError: The agent has no identities, or none was accepted
        """
        username = validate_username(username)
        path = str(agent_path) if agent_path else None
        self._connect(username, lambda engine: engine.connect_agent(username, path))

    def _connect(
        self,
        username: str,
        authenticate: Callable[[TransportEngine], Coroutine[Any, Any, None]],
    ) -> None:
        with self._lock:
            self._check_not_closed()
            if isinstance(self._state, Connected):
                raise AlreadyConnectedError(
                    f"Session to {self._host}:{self._port} is already connected",
                    context=ErrorContext(
                        host=self._host,
                        port=self._port,
                        username=self._state.engine.username,
                    ),
                )

            self._ensure_loop()
            assert self._emitter is not None
            engine = TransportEngine(self._host, self._port, self._config, self._emitter)
            # A failed attempt leaves the Session Disconnected and retryable
            self._run_sync(authenticate(engine))
            self._state = Connected(engine)
            self._engines.append(engine)
            logger.debug("Session %s:%d authenticated as %s", self._host, self._port, username)

    def close(self) -> None:
        """
        Close the transport and stop the event loop thread.

        Safe to call more than once; afterwards every operation raises
        SessionClosedError. A Session that is garbage collected without
        being closed is torn down the same way, but use it as a context
        manager (or call close()) to release the connection promptly.
        """
        with self._lock:
            if isinstance(self._state, Closed):
                return
            self._state = Closed()
            self._loop = None
            if self._finalizer is not None:
                self._finalizer()

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    def set_keepalive(self, want_reply: bool, interval_seconds: int) -> None:
        """
        Configure periodic keepalives and send one keepalive request now.

        Args:
            want_reply: Whether the immediate request waits for the peer's reply
            interval_seconds: Seconds between keepalives (0..2**32-1);
                0 disables periodic keepalives, the immediate request is still sent

        Raises:
            ValueError: interval_seconds is not an unsigned 32-bit integer
            NotAuthenticatedError: No authenticated transport
            TransportError: The request could not be sent or was not answered
        """
        validate_interval(interval_seconds)
        with self._lock:
            engine = self._require_engine("set_keepalive")
            self._run_sync(self._keepalive(engine, bool(want_reply), interval_seconds))

    async def _keepalive(self, engine: TransportEngine, want_reply: bool, interval: int) -> None:
        assert self._emitter is not None
        count_max = (self._config.keepalive or KeepaliveConfig()).max_count
        with self._emitter.timed_event(
            EventType.KEEPALIVE,
            interval_sec=interval,
            want_reply=want_reply,
            max_count=count_max,
            enabled=interval > 0,
        ) as data:
            try:
                engine.configure_keepalive(interval, count_max)
                await engine.send_keepalive(want_reply, self._config.keepalive_timeout)
            except SSHError as e:
                self._record_failure(data, e)
                raise
            data["status"] = "ok"

    # ------------------------------------------------------------------
    # Command execution and shell
    # ------------------------------------------------------------------

    def run_command(self, cmd: str) -> str:
        """
        Execute cmd on the remote and return its stdout, decoded.

        Stderr is read alongside stdout so the remote never blocks on it;
        its size and the exit status are recorded in the EXEC event only.

        Raises:
            NotAuthenticatedError: No authenticated transport
            ChannelOpenError: The remote refused the channel
            ExecError: The remote refused the exec request
            ChannelIOError: Reading failed, or stdout is not valid text in
                the configured encoding
            TransportError: operation_timeout expired
        """
        with self._lock:
            engine = self._require_engine("run_command")
            return self._run_sync(self._bounded(self._run_command(engine, cmd), "run_command"))

    async def _run_command(self, engine: TransportEngine, cmd: str) -> str:
        assert self._emitter is not None
        with self._emitter.timed_event(EventType.EXEC, command=cmd) as data:
            try:
                async with await engine.open_command(cmd) as channel:
                    stdout, stderr = await asyncio.gather(
                        channel.read_all(),
                        channel.read_stderr(),
                    )
                    exit_status = await channel.wait_exit()
                try:
                    output = stdout.decode(self._config.encoding)
                except UnicodeDecodeError as e:
                    raise ChannelIOError(
                        f"Output of {cmd!r} is not valid {self._config.encoding}: {e}",
                        context=engine.context(original_error=str(e)),
                    ) from e
            except SSHError as e:
                self._record_failure(data, e)
                raise

            data.update(
                status="ok",
                exit_code=exit_status,
                stdout_len=len(stdout),
                stderr_len=len(stderr),
            )
        return output

    def open_shell(self) -> None:
        """
        Check that the remote grants a shell: open a session channel,
        request an xterm PTY and a shell, then close the channel.

        This is not an interactive terminal; no I/O is performed.

        Raises:
            NotAuthenticatedError: No authenticated transport
            ChannelOpenError: The remote refused the channel, PTY or shell
        """
        with self._lock:
            engine = self._require_engine("open_shell")
            self._run_sync(self._bounded(self._open_shell(engine), "open_shell"))

    async def _open_shell(self, engine: TransportEngine) -> None:
        assert self._emitter is not None
        with self._emitter.timed_event(EventType.SHELL, term_type="xterm") as data:
            try:
                channel = await engine.open_shell()
                await channel.close()
            except SSHError as e:
                self._record_failure(data, e)
                raise
            data["status"] = "ok"

    # ------------------------------------------------------------------
    # File transfer
    # ------------------------------------------------------------------

    def upload_file(
        self,
        local_path: str | Path,
        remote_path: str,
        mode: int | None = None,
    ) -> None:
        """
        Copy a local file to remote_path with SCP.

        The local file is read to EOF before the transfer starts, so the
        announced size always matches the bytes sent.

        Args:
            local_path: File to upload
            remote_path: Destination file (or directory) on the remote
            mode: Permission bits; defaults to SessionConfig.scp_mode (0o644)

        Raises:
            NotAuthenticatedError: No authenticated transport
            ValueError: remote_path, mode or the local file name is unusable
            LocalIOError: local_path cannot be read
            ChannelOpenError: The remote refused the channel or the SCP sink
                rejected the file (bad path, permission denied)
            TransferError: The transfer did not complete
        """
        remote_path = validate_remote_path(remote_path)
        mode = self._config.scp_mode if mode is None else validate_scp_mode(mode)
        local_path = Path(local_path)
        record_name(local_path.name)
        with self._lock:
            engine = self._require_engine("upload_file")
            data = _read_local_file(local_path)
            self._run_sync(self._bounded(
                self._upload(engine, data, local_path.name, remote_path, mode),
                "upload_file",
            ))

    async def _upload(
        self,
        engine: TransportEngine,
        data: bytes,
        name: str,
        remote_path: str,
        mode: int,
    ) -> None:
        assert self._emitter is not None
        with self._emitter.timed_event(
            EventType.SCP_SEND,
            remote_path=remote_path,
            size=len(data),
            mode=oct(mode),
            state=TransferState.IDLE.value,
        ) as event:
            event["state"] = TransferState.CHANNEL_OPENING.value
            try:
                channel = await engine.open_scp_send(remote_path)
            except SSHError as e:
                event["state"] = TransferState.FAILED.value
                self._record_failure(event, e)
                raise

            try:
                async with channel:
                    await channel.start(name, len(data), mode)
                    await channel.send_all(data)
                    await channel.finish()
            except SSHError as e:
                self._record_failure(event, e)
                raise
            finally:
                event["state"] = channel.state.value
                event["bytes_sent"] = channel.bytes_written

            event["status"] = "ok"

    def download_file(self, remote_path: str) -> tuple[bytes, ScpFileStat]:
        """
        Copy remote_path from the remote with SCP.

        Returns:
            (content, stat) where stat carries size, mode and times as
            reported by the remote

        Raises:
            NotAuthenticatedError: No authenticated transport
            ChannelOpenError: The remote refused the channel, or reported an
                error before sending data (no such file, permission denied)
            TransferError: The stream failed or ended early
        """
        remote_path = validate_remote_path(remote_path)
        with self._lock:
            engine = self._require_engine("download_file")
            return self._run_sync(self._bounded(
                self._download(engine, remote_path),
                "download_file",
            ))

    async def _download(
        self,
        engine: TransportEngine,
        remote_path: str,
    ) -> tuple[bytes, ScpFileStat]:
        assert self._emitter is not None
        with self._emitter.timed_event(
            EventType.SCP_RECV,
            remote_path=remote_path,
            state=TransferState.IDLE.value,
        ) as event:
            event["state"] = TransferState.CHANNEL_OPENING.value
            try:
                channel = await engine.open_scp_recv(remote_path)
            except SSHError as e:
                event["state"] = TransferState.FAILED.value
                self._record_failure(event, e)
                raise

            try:
                async with channel:
                    stat = await channel.start()
                    event.update(stat.to_dict())
                    data = await channel.receive(stat.size)
            except SSHError as e:
                self._record_failure(event, e)
                raise
            finally:
                event["state"] = channel.state.value
                event["bytes_received"] = channel.bytes_read

            event["status"] = "ok"
        return data, stat
