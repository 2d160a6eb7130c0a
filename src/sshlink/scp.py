"""
SCP wire format.

SCP runs over an exec channel: the uploading side starts ``scp -t <path>``
on the remote (sink mode), the downloading side starts ``scp -f <path>``
(source mode). The two ends then exchange single-line records, each of
which is acknowledged with a status byte:

    T<mtime> 0 <atime> 0\\n     times of the next file (source with -p)
    C<mode> <size> <name>\\n    a file; exactly <size> data bytes follow,
                                then a status byte from the sender

Status bytes are ``\\0`` (ok), ``\\1`` (warning) or ``\\2`` (fatal); the
last two are followed by a message terminated by a newline.

Only single regular files are handled; directories (D/E records) are not.
"""
from __future__ import annotations

import asyncio
import os
import posixpath
import shlex
from dataclasses import dataclass
from typing import Any, Protocol

SCP_OK = b"\x00"
SCP_WARNING = 0x01
SCP_FATAL = 0x02

# Chunk size for streaming file data over the channel
BLOCK_SIZE = 16384

MAX_RECORD_LENGTH = 4096


class Reader(Protocol):
    async def readexactly(self, n: int) -> bytes: ...
    async def readline(self) -> bytes: ...


class Writer(Protocol):
    def write(self, data: bytes) -> None: ...
    async def drain(self) -> None: ...


@dataclass(frozen=True)
class ScpFileStat:
    """
    File metadata reported by the remote during an SCP receive.

    mtime/atime are None when the remote did not send a T record.
    """
    size: int
    mode: int
    mtime: int | None = None
    atime: int | None = None
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "mode": oct(self.mode),
            "mtime": self.mtime,
            "atime": self.atime,
            "name": self.name,
        }


class ScpProtocolError(Exception):
    """The peer sent something that is not valid SCP, or hung up early."""


class ScpStatusError(Exception):
    """The peer reported an error status (warning or fatal) with a message."""

    def __init__(self, message: str, fatal: bool) -> None:
        super().__init__(message)
        self.fatal = fatal


def sink_command(remote_path: str) -> str:
    """Remote command that receives one file at remote_path."""
    return f"scp -t {shlex.quote(remote_path)}"


def source_command(remote_path: str, preserve_times: bool = True) -> str:
    """Remote command that sends remote_path, with times if preserve_times."""
    flags = "-p -f" if preserve_times else "-f"
    return f"scp {flags} {shlex.quote(remote_path)}"


def record_name(name: str) -> bytes:
    """
    The last path component of name, as raw bytes for a C record.

    Names come from the local filesystem, so undecodable bytes are kept as
    they were on disk.

    Raises:
        ValueError: The name is empty or contains a newline, which would
            end the record early
    """
    base = posixpath.basename(name.rstrip("/")) or name
    raw = os.fsencode(base)
    if not raw or raw in (b".", b"..") or b"/" in raw:
        raise ValueError(f"Not a file name for SCP: {name!r}")
    if b"\n" in raw:
        raise ValueError(f"File name must not contain a newline: {name!r}")
    return raw


def format_file_record(mode: int, size: int, name: str) -> bytes:
    """
    Build a C record announcing a file.

    Args:
        mode: Permission bits (0..0o7777)
        size: Number of data bytes that will follow
        name: Target file name; only the last path component is sent

    Raises:
        ValueError: mode, size or name cannot be put in a record
    """
    if not 0 <= mode <= 0o7777:
        raise ValueError(f"mode out of range: {oct(mode)}")
    if size < 0:
        raise ValueError(f"size must be >= 0, got {size}")
    return b"C%04o %d " % (mode, size) + record_name(name) + b"\n"


def parse_times_record(record: bytes) -> tuple[int, int]:
    """
    Parse a T record (without trailing newline).

    Returns:
        (mtime, atime) in seconds
    """
    parts = record[1:].split()
    if not record.startswith(b"T") or len(parts) != 4:
        raise ScpProtocolError(f"Malformed times record: {record!r}")
    try:
        return int(parts[0]), int(parts[2])
    except ValueError as e:
        raise ScpProtocolError(f"Malformed times record: {record!r}") from e


def parse_file_record(record: bytes) -> tuple[int, int, str]:
    """
    Parse a C record (without trailing newline).

    Returns:
        (mode, size, name)
    """
    parts = record[1:].split(b" ", 2)
    if not record.startswith(b"C") or len(parts) != 3:
        raise ScpProtocolError(f"Malformed file record: {record!r}")
    try:
        mode = int(parts[0], 8)
        size = int(parts[1])
    except ValueError as e:
        raise ScpProtocolError(f"Malformed file record: {record!r}") from e
    if size < 0:
        raise ScpProtocolError(f"Negative size in file record: {record!r}")
    return mode, size, parts[2].decode("utf-8", errors="replace")


async def _read_message(reader: Reader) -> str:
    line = await reader.readline()
    return line.rstrip(b"\n").decode("utf-8", errors="replace").strip()


async def read_status(reader: Reader) -> None:
    """
    Read one status byte.

    Raises:
        ScpStatusError: The peer reported a warning or fatal error
        ScpProtocolError: The channel ended before a status arrived
    """
    try:
        code = await reader.readexactly(1)
    except asyncio.IncompleteReadError as e:
        raise ScpProtocolError("Channel closed while waiting for SCP status") from e

    if code == SCP_OK:
        return

    if code[0] in (SCP_WARNING, SCP_FATAL):
        message = await _read_message(reader)
        raise ScpStatusError(message or "remote scp error", fatal=code[0] == SCP_FATAL)

    # Anything else is the start of an error line from a non-scp process,
    # e.g. a shell complaining that scp is not installed
    rest = await _read_message(reader)
    raise ScpStatusError(
        (code + rest.encode("utf-8")).decode("utf-8", errors="replace"),
        fatal=True,
    )


async def read_record(reader: Reader) -> bytes:
    """
    Read one T or C record sent by a source.

    Returns:
        The record without its trailing newline

    Raises:
        ScpStatusError: The source reported an error instead of a record
        ScpProtocolError: EOF, an overlong line, or an unexpected record type
    """
    try:
        first = await reader.readexactly(1)
    except asyncio.IncompleteReadError as e:
        raise ScpProtocolError("Channel closed before an SCP record arrived") from e

    if first[0] in (SCP_WARNING, SCP_FATAL):
        message = await _read_message(reader)
        raise ScpStatusError(message or "remote scp error", fatal=first[0] == SCP_FATAL)

    line = first + await reader.readline()
    if not line.endswith(b"\n"):
        raise ScpProtocolError(f"Truncated SCP record: {line!r}")
    if len(line) > MAX_RECORD_LENGTH:
        raise ScpProtocolError("SCP record exceeds maximum length")

    record = line[:-1]
    if record[:1] not in (b"T", b"C"):
        if record[:1] in (b"D", b"E"):
            raise ScpProtocolError("Directory transfers are not supported")
        raise ScpProtocolError(f"Unexpected SCP record: {record!r}")
    return record


def send_ok(writer: Writer) -> None:
    writer.write(SCP_OK)


async def read_data(reader: Reader, size: int) -> bytes:
    """
    Read exactly size data bytes in BLOCK_SIZE chunks.

    Raises:
        ScpProtocolError: The channel ended before size bytes arrived
    """
    data = bytearray()
    while len(data) < size:
        want = min(BLOCK_SIZE, size - len(data))
        try:
            data += await reader.readexactly(want)
        except asyncio.IncompleteReadError as e:
            data += e.partial
            raise ScpProtocolError(
                f"Channel closed after {len(data)} of {size} bytes"
            ) from e
    return bytes(data)
