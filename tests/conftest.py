"""
Pytest fixtures for sshlink tests.

Provides:
- SSH server fixtures (MockSSHServer-based, no sshd required), both on the
  test's loop and on a background thread for the blocking Session
- Authenticated Session fixture
- Mock ssh-agent fixtures
- Event capture fixture for asserting event sequences
"""
from __future__ import annotations

import socket
from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator, Generator

import asyncssh
import pytest

if TYPE_CHECKING:
    from sshlink.events import EventCollector
    from sshlink.session import Session
    from sshlink.testing import MockAgent, MockSSHServer, ThreadedMockSSHServer


@pytest.fixture
def free_port() -> int:
    """A local port nothing is listening on (bound briefly, then released)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def event_collector() -> Generator["EventCollector", None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(event_collector):
            session = Session(host, port, event_collector=event_collector)
            ...
            assert event_collector.events[0].event_type == "CONNECT"
    """
    from sshlink.events import EventCollector

    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"


@pytest.fixture
def client_key() -> asyncssh.SSHKey:
    """An ed25519 key pair for agent-based authentication."""
    return asyncssh.generate_private_key("ssh-ed25519", comment="test@sshlink")


@pytest.fixture
async def mock_ssh_server() -> AsyncGenerator["MockSSHServer", None]:
    """MockSSHServer on the test's own event loop, for async engine tests."""
    from sshlink.testing import MockServerConfig, MockSSHServer

    async with MockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server


@pytest.fixture
def threaded_server() -> Generator["ThreadedMockSSHServer", None, None]:
    """MockSSHServer on a background thread, for blocking Session tests."""
    from sshlink.testing import MockServerConfig, ThreadedMockSSHServer

    with ThreadedMockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server


@pytest.fixture
def session(
    threaded_server: "ThreadedMockSSHServer",
    event_collector: "EventCollector",
) -> Generator["Session", None, None]:
    """A Session authenticated against threaded_server with a password."""
    from sshlink.config import SessionConfig
    from sshlink.session import Session

    config = SessionConfig(connect_timeout=5.0, operation_timeout=30.0)
    with Session(
        threaded_server.host,
        threaded_server.port,
        config=config,
        event_collector=event_collector,
    ) as session:
        session.connect_with_password("test", "test")
        yield session


@pytest.fixture
def mock_agent(client_key: asyncssh.SSHKey) -> Generator["MockAgent", None, None]:
    """A mock ssh-agent holding client_key."""
    from sshlink.testing import MockAgent

    with MockAgent([client_key]) as agent:
        yield agent


@pytest.fixture
def agent_server(
    client_key: asyncssh.SSHKey,
) -> Generator["ThreadedMockSSHServer", None, None]:
    """A threaded mock server that accepts client_key for user "test"."""
    from sshlink.testing import MockServerConfig, ThreadedMockSSHServer

    config = MockServerConfig(username="test", authorized_keys=[client_key])
    with ThreadedMockSSHServer(config) as server:
        yield server
