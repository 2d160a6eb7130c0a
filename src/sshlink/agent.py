"""
SSH agent access: identity listing and agent-backed keys for authentication.

The agent is reached through its Unix socket (SSH_AUTH_SOCK by default).
Every connection opened here is closed again before returning, whether the
agent answered or not.

Failures are classified as:
- AgentUnavailableError: no socket configured, socket missing, connection
  refused or dropped
- AgentProtocolError: the agent answered with something unparseable
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import asyncssh

from sshlink.errors import AgentProtocolError, AgentUnavailableError, ErrorContext
from sshlink.events import EventCollector, EventEmitter, EventType
from sshlink.platform import AGENT_SOCK_ENV, expand_path, get_agent_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """
    A public key held by the agent.

    - comment: Free-form label, usually the key's file name or user@host
    - blob: SSH wire-format public key
    - algorithm: Key algorithm name, e.g. "ssh-ed25519"
    """
    comment: str
    blob: bytes
    algorithm: str


def _resolve_agent_path(agent_path: str | Path | None) -> str:
    path = str(agent_path) if agent_path else get_agent_path()
    if not path:
        raise AgentUnavailableError(
            f"SSH agent not available: {AGENT_SOCK_ENV} not set",
            reason="no_auth_sock",
        )

    if not expand_path(path).exists():
        raise AgentUnavailableError(
            f"SSH agent socket not found: {path}",
            reason="socket_not_found",
            context=ErrorContext(extra={"agent_path": path}),
        )
    return str(expand_path(path))


def _is_connection_failure(exc: BaseException) -> bool:
    """asyncssh reports socket failures as ValueError chained to the I/O error."""
    if isinstance(exc, (OSError, EOFError)):
        return True
    return isinstance(exc.__context__, (OSError, EOFError))


async def _open_agent(path: str) -> asyncssh.SSHAgentClient:
    try:
        agent = await asyncssh.connect_agent(path)
    except OSError as e:
        raise AgentUnavailableError(
            f"Failed to connect to SSH agent at {path}: {e}",
            reason="connection_failed",
            context=ErrorContext(original_error=str(e), extra={"agent_path": path}),
        ) from e

    if agent is None:
        raise AgentUnavailableError(
            f"Failed to connect to SSH agent at {path}",
            reason="connection_failed",
            context=ErrorContext(extra={"agent_path": path}),
        )
    return agent


async def _close_agent(agent: asyncssh.SSHAgentClient) -> None:
    agent.close()
    await agent.wait_closed()


async def _get_keys(
    agent: asyncssh.SSHAgentClient,
    path: str,
) -> list[asyncssh.SSHKeyPair]:
    try:
        return list(await agent.get_keys())
    except (ValueError, OSError, EOFError, asyncssh.KeyImportError) as e:
        context = ErrorContext(original_error=str(e), extra={"agent_path": path})
        if _is_connection_failure(e):
            raise AgentUnavailableError(
                f"SSH agent at {path} dropped the connection: {e}",
                reason="connection_lost",
                context=context,
            ) from e
        raise AgentProtocolError(
            f"SSH agent at {path} sent an invalid reply: {e}",
            reason="bad_reply",
            context=context,
        ) from e


@asynccontextmanager
async def agent_keys(
    agent_path: str | Path | None = None,
) -> AsyncIterator[list[asyncssh.SSHKeyPair]]:
    """
    Yield the agent's keys as signing key pairs.

    The agent connection stays open inside the block, since the keys sign
    through it, and is closed on exit.

    Usage:
        async with agent_keys() as keys:
            conn = await asyncssh.connect(host, client_keys=keys)
    """
    path = _resolve_agent_path(agent_path)
    agent = await _open_agent(path)
    try:
        keys = await _get_keys(agent, path)
        logger.debug("Agent at %s holds %d key(s)", path, len(keys))
        yield keys
    finally:
        await _close_agent(agent)


def _to_identity(key: asyncssh.SSHKeyPair) -> Identity:
    comment = key.get_comment_bytes() or b""
    return Identity(
        comment=comment.decode("utf-8", errors="replace"),
        blob=bytes(key.public_data),
        algorithm=key.algorithm.decode("ascii", errors="replace"),
    )


async def fetch_agent_identities(
    agent_path: str | Path | None = None,
    event_collector: EventCollector | None = None,
    event_log_path: Path | str | None = None,
) -> list[Identity]:
    """
    List the identities held by the agent, in the agent's order.

    Args:
        agent_path: Agent socket; defaults to SSH_AUTH_SOCK
        event_collector: Optional collector receiving an AGENT event
        event_log_path: Optional JSONL file receiving an AGENT event

    Raises:
        AgentUnavailableError: No agent reachable
        AgentProtocolError: The agent's reply could not be parsed
    """
    emitter = EventEmitter(collector=event_collector, jsonl_path=event_log_path)
    try:
        with emitter.timed_event(EventType.AGENT, agent_path=str(agent_path or "")) as data:
            try:
                async with agent_keys(agent_path) as keys:
                    identities = [_to_identity(key) for key in keys]
            except AgentUnavailableError as e:
                data.update(status="unavailable", **e.to_dict())
                raise
            except AgentProtocolError as e:
                data.update(status="protocol_error", **e.to_dict())
                raise
            data["status"] = "ok"
            data["count"] = len(identities)
            data["comments"] = [identity.comment for identity in identities]
        return identities
    finally:
        emitter.close()


def list_agent_identities(
    agent_path: str | Path | None = None,
    event_collector: EventCollector | None = None,
    event_log_path: Path | str | None = None,
) -> dict[str, bytes]:
    """
    Map each agent identity's comment to its public key blob.

    When two identities share a comment the later one wins; use
    fetch_agent_identities() to see all of them.

    Must not be called from a running event loop; await
    fetch_agent_identities() there instead.

    Raises:
        AgentUnavailableError: No agent reachable
        AgentProtocolError: The agent's reply could not be parsed
    """
    identities = asyncio.run(
        fetch_agent_identities(agent_path, event_collector, event_log_path)
    )
    return {identity.comment: identity.blob for identity in identities}
