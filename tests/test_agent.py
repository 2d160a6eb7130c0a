"""
Tests for SSH agent identity listing and agent authentication.

Uses MockAgent, which serves fixed keys over a Unix socket, so no real
ssh-agent is needed.
"""
from __future__ import annotations

from pathlib import Path

import asyncssh
import pytest

from sshlink.agent import Identity, fetch_agent_identities, list_agent_identities
from sshlink.config import SessionConfig
from sshlink.errors import (
    AgentError,
    AgentProtocolError,
    AgentUnavailableError,
    AuthError,
)
from sshlink.events import EventCollector, EventType, read_jsonl_events
from sshlink.session import Session
from sshlink.testing import AgentBehaviour, MockAgent, ThreadedMockSSHServer
from sshlink.testing.mock_agent import SSH_AGENTC_REQUEST_IDENTITIES


class TestListIdentities:
    """Tests for list_agent_identities()."""

    def test_single_identity(self, mock_agent: MockAgent, client_key: asyncssh.SSHKey) -> None:
        identities = list_agent_identities(mock_agent.path)
        assert identities == {"test@sshlink": client_key.public_data}

    def test_empty_agent(self) -> None:
        with MockAgent([]) as agent:
            assert list_agent_identities(agent.path) == {}

    def test_several_identities(self) -> None:
        keys = [asyncssh.generate_private_key("ssh-ed25519") for _ in range(3)]
        with MockAgent(keys, comments=["a", "b", "c"]) as agent:
            identities = list_agent_identities(agent.path)
        assert identities == {
            "a": keys[0].public_data,
            "b": keys[1].public_data,
            "c": keys[2].public_data,
        }

    def test_duplicate_comments_last_wins(self) -> None:
        keys = [asyncssh.generate_private_key("ssh-ed25519") for _ in range(2)]
        with MockAgent(keys, comments=["dup", "dup"]) as agent:
            identities = list_agent_identities(agent.path)
        assert identities == {"dup": keys[1].public_data}

    def test_uses_ssh_auth_sock(
        self, mock_agent: MockAgent, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SSH_AUTH_SOCK", mock_agent.path)
        assert "test@sshlink" in list_agent_identities()

    def test_each_listing_opens_own_connection(self, mock_agent: MockAgent) -> None:
        list_agent_identities(mock_agent.path)
        list_agent_identities(mock_agent.path)
        assert mock_agent.requests.count(SSH_AGENTC_REQUEST_IDENTITIES) == 2
        assert mock_agent.connections == 2


class TestFetchIdentities:
    """Tests for the async fetch_agent_identities()."""

    async def test_preserves_order_and_duplicates(self) -> None:
        keys = [asyncssh.generate_private_key("ssh-ed25519") for _ in range(2)]
        with MockAgent(keys, comments=["dup", "dup"]) as agent:
            identities = await fetch_agent_identities(agent.path)

        assert [i.blob for i in identities] == [k.public_data for k in keys]
        assert all(isinstance(i, Identity) for i in identities)
        assert identities[0].algorithm == "ssh-ed25519"

    async def test_emits_agent_event(
        self, mock_agent: MockAgent, event_collector: EventCollector
    ) -> None:
        await fetch_agent_identities(mock_agent.path, event_collector=event_collector)

        events = event_collector.get_by_type(EventType.AGENT)
        assert len(events) == 1
        assert events[0].data["status"] == "ok"
        assert events[0].data["count"] == 1
        assert events[0].data["comments"] == ["test@sshlink"]
        assert events[0].data["duration_ms"] >= 0

    async def test_event_log(self, mock_agent: MockAgent, temp_jsonl_path: Path) -> None:
        await fetch_agent_identities(mock_agent.path, event_log_path=temp_jsonl_path)
        events = read_jsonl_events(temp_jsonl_path)
        assert [e.event_type for e in events] == ["AGENT"]


class TestAgentErrors:
    """Tests for agent failure classification."""

    def test_no_auth_sock(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
        with pytest.raises(AgentUnavailableError) as exc_info:
            list_agent_identities()
        assert exc_info.value.reason == "no_auth_sock"

    def test_socket_missing(self, tmp_path: Path) -> None:
        with pytest.raises(AgentUnavailableError) as exc_info:
            list_agent_identities(tmp_path / "no-agent.sock")
        assert exc_info.value.reason == "socket_not_found"

    def test_not_a_socket(self, tmp_path: Path) -> None:
        path = tmp_path / "plain-file"
        path.write_text("not an agent")
        with pytest.raises(AgentUnavailableError):
            list_agent_identities(path)

    def test_malformed_reply(self, client_key: asyncssh.SSHKey) -> None:
        with MockAgent([client_key], behaviour=AgentBehaviour.MALFORMED) as agent:
            with pytest.raises(AgentProtocolError) as exc_info:
                list_agent_identities(agent.path)
        assert exc_info.value.reason == "bad_reply"

    def test_hang_up(self, client_key: asyncssh.SSHKey) -> None:
        with MockAgent([client_key], behaviour=AgentBehaviour.HANG_UP) as agent:
            with pytest.raises(AgentError):
                list_agent_identities(agent.path)

    def test_agent_errors_are_auth_errors(self, tmp_path: Path) -> None:
        with pytest.raises(AuthError):
            list_agent_identities(tmp_path / "no-agent.sock")

    async def test_failure_event(self, tmp_path: Path, event_collector: EventCollector) -> None:
        with pytest.raises(AgentUnavailableError):
            await fetch_agent_identities(
                tmp_path / "no-agent.sock", event_collector=event_collector,
            )

        event = event_collector.get_by_type(EventType.AGENT)[0]
        assert event.data["status"] == "unavailable"
        assert event.data["error_type"] == "AgentUnavailableError"
        assert event.data["reason"] == "socket_not_found"

    async def test_protocol_error_event(
        self, client_key: asyncssh.SSHKey, event_collector: EventCollector
    ) -> None:
        with MockAgent([client_key], behaviour=AgentBehaviour.MALFORMED) as agent:
            with pytest.raises(AgentProtocolError):
                await fetch_agent_identities(agent.path, event_collector=event_collector)

        event = event_collector.get_by_type(EventType.AGENT)[0]
        assert event.data["status"] == "protocol_error"


class TestConnectWithAgent:
    """Tests for Session.connect_with_agent()."""

    def test_authenticates(
        self,
        agent_server: ThreadedMockSSHServer,
        mock_agent: MockAgent,
        event_collector: EventCollector,
    ) -> None:
        with Session(
            agent_server.host,
            agent_server.port,
            config=SessionConfig(connect_timeout=5.0),
            event_collector=event_collector,
        ) as session:
            session.connect_with_agent("test", mock_agent.path)
            assert session.is_authenticated()
            assert session.run_command("whoami") == "test\n"

        auth = event_collector.get_by_type(EventType.AUTH)
        assert auth[-1].data["status"] == "success"
        assert auth[-1].data["method"] == "agent"

    def test_uses_ssh_auth_sock(
        self,
        agent_server: ThreadedMockSSHServer,
        mock_agent: MockAgent,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("SSH_AUTH_SOCK", mock_agent.path)
        with Session(agent_server.host, agent_server.port) as session:
            session.connect_with_agent("test")
            assert session.is_authenticated()

    def test_empty_agent(self, agent_server: ThreadedMockSSHServer) -> None:
        with MockAgent([]) as agent:
            with Session(agent_server.host, agent_server.port) as session:
                with pytest.raises(AuthError, match="no identities"):
                    session.connect_with_agent("test", agent.path)
                assert not session.is_authenticated()

    def test_key_not_authorised(self, agent_server: ThreadedMockSSHServer) -> None:
        other = asyncssh.generate_private_key("ssh-ed25519")
        with MockAgent([other]) as agent:
            with Session(agent_server.host, agent_server.port) as session:
                with pytest.raises(AuthError):
                    session.connect_with_agent("test", agent.path)
                assert not session.is_authenticated()

    def test_wrong_user(self, agent_server: ThreadedMockSSHServer, mock_agent: MockAgent) -> None:
        with Session(agent_server.host, agent_server.port) as session:
            with pytest.raises(AuthError):
                session.connect_with_agent("mallory", mock_agent.path)

    def test_no_agent(
        self,
        agent_server: ThreadedMockSSHServer,
        tmp_path: Path,
        event_collector: EventCollector,
    ) -> None:
        with Session(
            agent_server.host, agent_server.port, event_collector=event_collector
        ) as session:
            with pytest.raises(AgentUnavailableError):
                session.connect_with_agent("test", tmp_path / "no-agent.sock")
            assert not session.is_authenticated()

        assert event_collector.get_by_type(EventType.AUTH)[0].data["status"] == "failed"
        error = event_collector.get_by_type(EventType.ERROR)[0]
        assert error.data["reason"] == "socket_not_found"
        assert error.data["host"] == agent_server.host

    def test_retry_after_failure(
        self, agent_server: ThreadedMockSSHServer, mock_agent: MockAgent, tmp_path: Path
    ) -> None:
        """A failed attempt leaves the Session usable for another attempt."""
        with Session(agent_server.host, agent_server.port) as session:
            with pytest.raises(AgentUnavailableError):
                session.connect_with_agent("test", tmp_path / "no-agent.sock")
            session.connect_with_agent("test", mock_agent.path)
            assert session.is_authenticated()
