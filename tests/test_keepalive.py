"""
Tests for keepalive configuration and Session.set_keepalive().

Tests:
1. KeepaliveConfig validation and option derivation
2. set_keepalive() sends a keepalive request and emits KEEPALIVE events
3. Invalid intervals rejected before any I/O
4. A dropped transport surfaces as TransportError
"""
from __future__ import annotations

import time

import pytest

from sshlink.config import SessionConfig
from sshlink.errors import NotAuthenticatedError, TransportError
from sshlink.events import EventCollector, EventType
from sshlink.keepalive import KeepaliveConfig
from sshlink.session import Session
from sshlink.testing import ThreadedMockSSHServer
from sshlink.validation import MAX_UINT32


class TestKeepaliveConfig:
    """Tests for KeepaliveConfig dataclass validation."""

    def test_default_values(self) -> None:
        """Default config should have sensible values."""
        config = KeepaliveConfig()

        assert config.interval_sec == 30
        assert config.max_count == 3
        assert config.enabled

    def test_zero_interval_disables(self) -> None:
        assert not KeepaliveConfig(interval_sec=0).enabled

    def test_interval_must_be_uint32(self) -> None:
        with pytest.raises(ValueError):
            KeepaliveConfig(interval_sec=-1)
        with pytest.raises(ValueError):
            KeepaliveConfig(interval_sec=MAX_UINT32 + 1)

    def test_max_count_must_be_positive(self) -> None:
        with pytest.raises(AssertionError, match="max_count must be positive"):
            KeepaliveConfig(max_count=0)

    def test_to_asyncssh_options(self) -> None:
        options = KeepaliveConfig(interval_sec=15, max_count=2).to_asyncssh_options()
        assert options == {"keepalive_interval": 15, "keepalive_count_max": 2}

    def test_recorded_in_connect_event(
        self, threaded_server: ThreadedMockSSHServer, event_collector: EventCollector
    ) -> None:
        config = SessionConfig(connect_timeout=5.0, keepalive=KeepaliveConfig(interval_sec=0))
        with Session(
            threaded_server.host,
            threaded_server.port,
            config=config,
            event_collector=event_collector,
        ) as session:
            session.connect_with_password("test", "test")

        connected = event_collector.get_by_type(EventType.CONNECT)[-1]
        assert connected.data["keepalive"] == {
            "interval_sec": 0,
            "max_count": 3,
            "enabled": False,
        }


class TestSetKeepalive:
    """Tests for Session.set_keepalive() against the mock server."""

    def test_request_with_reply(self, session: Session, event_collector: EventCollector) -> None:
        session.set_keepalive(True, 30)

        events = event_collector.get_by_type(EventType.KEEPALIVE)
        assert len(events) == 1
        assert events[0].data["status"] == "ok"
        assert events[0].data["interval_sec"] == 30
        assert events[0].data["want_reply"] is True
        assert events[0].data["enabled"] is True

    def test_request_without_reply(self, session: Session, event_collector: EventCollector) -> None:
        session.set_keepalive(False, 5)
        assert event_collector.get_by_type(EventType.KEEPALIVE)[0].data["status"] == "ok"

    def test_zero_interval_still_sends(
        self, session: Session, event_collector: EventCollector
    ) -> None:
        """Interval 0 disables periodic keepalives; the immediate request is still sent."""
        session.set_keepalive(True, 0)

        event = event_collector.get_by_type(EventType.KEEPALIVE)[0]
        assert event.data["status"] == "ok"
        assert event.data["enabled"] is False

    def test_session_usable_after_keepalive(self, session: Session) -> None:
        session.set_keepalive(True, 1)
        assert session.run_command("echo still here") == "still here\n"

    def test_reconfigure(self, session: Session, event_collector: EventCollector) -> None:
        session.set_keepalive(True, 10)
        session.set_keepalive(False, 0)
        assert len(event_collector.get_by_type(EventType.KEEPALIVE)) == 2

    @pytest.mark.parametrize("interval", [-1, MAX_UINT32 + 1, 1.5])
    def test_invalid_interval_rejected(
        self, session: Session, event_collector: EventCollector, interval: object
    ) -> None:
        with pytest.raises(ValueError):
            session.set_keepalive(True, interval)  # type: ignore[arg-type]
        assert event_collector.get_by_type(EventType.KEEPALIVE) == []

    def test_invalid_interval_checked_before_auth(self) -> None:
        """Validation happens before the authentication check."""
        with Session("127.0.0.1", 22) as session:
            with pytest.raises(ValueError):
                session.set_keepalive(True, -1)

    def test_requires_authentication(self) -> None:
        with Session("127.0.0.1", 22) as session:
            with pytest.raises(NotAuthenticatedError):
                session.set_keepalive(True, 30)

    def test_dropped_transport(
        self,
        threaded_server: ThreadedMockSSHServer,
        session: Session,
        event_collector: EventCollector,
    ) -> None:
        threaded_server.drop_connections()
        # Give the client's loop a moment to observe the lost connection
        time.sleep(0.5)

        with pytest.raises(TransportError):
            session.set_keepalive(True, 30)

        # A transport that dies after auth stays authenticated
        assert session.is_authenticated()
        event = event_collector.get_by_type(EventType.KEEPALIVE)[0]
        assert event.data["status"] == "failed"
        assert event.data["error_type"] == "TransportError"
        assert event_collector.get_by_type(EventType.ERROR)

        session.close()
        disconnect = event_collector.get_by_type(EventType.DISCONNECT)[0]
        assert disconnect.data["reason"] == "network_error"
