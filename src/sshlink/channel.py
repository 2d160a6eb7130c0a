"""
Channel handles: short-lived, single-purpose streams over one transport.

Provides:
- ChannelMode: what a handle was opened for
- TransferState: lifecycle of one SCP transfer
- ChannelHandle: byte-stream read/write over one SSH session channel
- ScpSendChannel / ScpRecvChannel: SCP sink and source conversations

A handle is used for exactly one logical operation and then closed. It is
never shared and never outlives the coroutine that opened it; use it as an
async context manager so it is closed exactly once on every exit path.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import asyncssh

from sshlink.errors import (
    ChannelClosedError,
    ChannelIOError,
    ChannelOpenError,
    ErrorContext,
    TransferError,
)
from sshlink.scp import (
    BLOCK_SIZE,
    SCP_OK,
    ScpFileStat,
    ScpProtocolError,
    ScpStatusError,
    format_file_record,
    parse_file_record,
    parse_times_record,
    read_data,
    read_record,
    read_status,
    send_ok,
)

logger = logging.getLogger(__name__)


class ChannelMode(str, Enum):
    """Purpose of a channel handle."""
    COMMAND = "command"
    SHELL = "shell"
    SCP_SEND = "scp_send"
    SCP_RECV = "scp_recv"


class TransferState(str, Enum):
    """
    State of one SCP transfer.

    IDLE -> CHANNEL_OPENING -> TRANSFERRING -> CLOSED, with FAILED
    reachable from any non-terminal state.
    """
    IDLE = "idle"
    CHANNEL_OPENING = "channel_opening"
    TRANSFERRING = "transferring"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TransferState.CLOSED, TransferState.FAILED)


class ChannelHandle:
    """
    One SSH session channel used for a single operation.

    Wraps an asyncssh client process opened in binary mode. All I/O
    failures surface as ChannelIOError; I/O after close() raises
    ChannelClosedError.
    """

    def __init__(
        self,
        mode: ChannelMode,
        process: asyncssh.SSHClientProcess,
        context: ErrorContext | None = None,
    ) -> None:
        self._mode = mode
        self._process = process
        self._context = context or ErrorContext()
        self._closed = False
        self._bytes_read = 0
        self._bytes_written = 0

    @property
    def mode(self) -> ChannelMode:
        return self._mode

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def bytes_read(self) -> int:
        return self._bytes_read

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    @property
    def exit_status(self) -> int | None:
        """Remote exit status, once the remote has reported it."""
        return self._process.exit_status

    def _check_open(self) -> None:
        if self._closed:
            raise ChannelClosedError(
                f"{self._mode.value} channel is already closed",
                context=self._context,
            )

    def _io_error(self, action: str, exc: BaseException) -> ChannelIOError:
        self._context.original_error = str(exc) or type(exc).__name__
        return ChannelIOError(
            f"{action} failed on {self._mode.value} channel: {self._context.original_error}",
            context=self._context,
        )

    async def read(self, n: int = -1) -> bytes:
        """Read up to n bytes of stdout (all remaining if n < 0)."""
        self._check_open()
        try:
            data = await self._process.stdout.read(n)
        except (asyncssh.Error, OSError) as e:
            raise self._io_error("Read", e) from e
        self._bytes_read += len(data)
        return data

    async def read_all(self) -> bytes:
        """Read stdout until the remote sends EOF."""
        return await self.read(-1)

    async def read_stderr(self) -> bytes:
        """Read stderr until the remote sends EOF."""
        self._check_open()
        try:
            return await self._process.stderr.read()
        except (asyncssh.Error, OSError) as e:
            raise self._io_error("Stderr read", e) from e

    async def write(self, data: bytes) -> None:
        """Write data to stdin and wait until it has been flushed."""
        self._check_open()
        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (asyncssh.Error, OSError) as e:
            raise self._io_error("Write", e) from e
        self._bytes_written += len(data)

    async def write_eof(self) -> None:
        self._check_open()
        try:
            self._process.stdin.write_eof()
        except (asyncssh.Error, OSError) as e:
            raise self._io_error("EOF", e) from e

    async def wait_exit(self) -> int | None:
        """Wait for the remote to report exit status (or close the channel)."""
        self._check_open()
        try:
            await self._process.wait_closed()
        except (asyncssh.Error, OSError) as e:
            raise self._io_error("Wait", e) from e
        return self._process.exit_status

    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._process.close()
        await self._process.wait_closed()
        logger.debug(
            "Closed %s channel (read=%d, written=%d)",
            self._mode.value, self._bytes_read, self._bytes_written,
        )

    async def __aenter__(self) -> "ChannelHandle":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class _ScpChannel(ChannelHandle):
    """Shared transfer-state bookkeeping for SCP conversations."""

    def __init__(
        self,
        mode: ChannelMode,
        process: asyncssh.SSHClientProcess,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(mode, process, context)
        self.state = TransferState.CHANNEL_OPENING
        self._complete = False

    def _fail(self, exc: BaseException) -> None:
        self.state = TransferState.FAILED
        self._context.original_error = str(exc) or type(exc).__name__

    async def close(self) -> None:
        if not self.closed and not self.state.terminal:
            self.state = TransferState.CLOSED if self._complete else TransferState.FAILED
        await super().close()


class ScpSendChannel(_ScpChannel):
    """
    SCP sink conversation: the remote runs ``scp -t`` and we send one file.
    """

    def __init__(
        self,
        process: asyncssh.SSHClientProcess,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(ChannelMode.SCP_SEND, process, context)

    async def start(self, name: str, size: int, mode: int) -> None:
        """
        Wait for the sink to be ready and announce the file.

        Raises:
            ChannelOpenError: The sink refused the request (bad path,
                permission denied, scp missing)
        """
        self._check_open()
        try:
            await read_status(self._process.stdout)
            self._process.stdin.write(format_file_record(mode, size, name))
            await self._process.stdin.drain()
            await read_status(self._process.stdout)
        except (ScpStatusError, ScpProtocolError, asyncssh.Error, OSError) as e:
            self._fail(e)
            raise ChannelOpenError(
                f"SCP sink refused {self._context.remote_path}: {e}",
                context=self._context,
            ) from e
        self.state = TransferState.TRANSFERRING

    async def send(self, data: bytes) -> None:
        """Stream a chunk of file data."""
        try:
            await self.write(data)
        except ChannelIOError as e:
            self._fail(e)
            raise TransferError(str(e), context=self._context) from e

    async def send_all(self, data: bytes) -> None:
        """Stream data in BLOCK_SIZE chunks."""
        view = memoryview(data)
        for offset in range(0, len(view), BLOCK_SIZE):
            await self.send(bytes(view[offset:offset + BLOCK_SIZE]))

    async def finish(self) -> None:
        """
        Terminate the data with a status byte and wait for the sink's ack.

        Raises:
            TransferError: The sink reported an error or hung up
        """
        self._check_open()
        try:
            self._process.stdin.write(SCP_OK)
            await self._process.stdin.drain()
            await read_status(self._process.stdout)
            self._process.stdin.write_eof()
        except (ScpStatusError, ScpProtocolError, asyncssh.Error, OSError) as e:
            self._fail(e)
            raise TransferError(
                f"SCP upload to {self._context.remote_path} did not complete: {e}",
                context=self._context,
            ) from e
        self._complete = True


class ScpRecvChannel(_ScpChannel):
    """
    SCP source conversation: the remote runs ``scp -p -f`` and sends one file.
    """

    def __init__(
        self,
        process: asyncssh.SSHClientProcess,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(ChannelMode.SCP_RECV, process, context)

    async def start(self) -> ScpFileStat:
        """
        Signal readiness and read the file's metadata records.

        Raises:
            ChannelOpenError: The source reported an error before any data
                (no such file, permission denied) or sent no file at all
        """
        self._check_open()
        mtime: int | None = None
        atime: int | None = None
        try:
            send_ok(self._process.stdin)
            record = await read_record(self._process.stdout)
            if record.startswith(b"T"):
                mtime, atime = parse_times_record(record)
                send_ok(self._process.stdin)
                record = await read_record(self._process.stdout)
            if not record.startswith(b"C"):
                raise ScpProtocolError(f"Expected a file record, got {record!r}")
            mode, size, name = parse_file_record(record)
            send_ok(self._process.stdin)
        except (ScpStatusError, ScpProtocolError, asyncssh.Error, OSError) as e:
            self._fail(e)
            raise ChannelOpenError(
                f"SCP source refused {self._context.remote_path}: {e}",
                context=self._context,
            ) from e

        self.state = TransferState.TRANSFERRING
        return ScpFileStat(size=size, mode=mode, mtime=mtime, atime=atime, name=name)

    async def receive(self, size: int) -> bytes:
        """
        Read exactly size bytes plus the source's trailing status.

        Raises:
            TransferError: The stream ended early or reported an error
        """
        self._check_open()
        try:
            data = await read_data(self._process.stdout, size)
            self._bytes_read += len(data)
            await read_status(self._process.stdout)
            send_ok(self._process.stdin)
            await self._process.stdin.drain()
        except (ScpStatusError, ScpProtocolError, asyncssh.Error, OSError) as e:
            self._fail(e)
            raise TransferError(
                f"SCP download of {self._context.remote_path} did not complete: {e}",
                context=self._context,
            ) from e
        self._complete = True
        return data
