"""
Testing utilities for sshlink.

Provides MockSSHServer and MockAgent for integration testing without a
real sshd or ssh-agent.
"""
from sshlink.testing.mock_agent import AgentBehaviour, MockAgent
from sshlink.testing.mock_server import MockServerConfig, MockSSHServer, ThreadedMockSSHServer

__all__ = [
    "AgentBehaviour",
    "MockAgent",
    "MockServerConfig",
    "MockSSHServer",
    "ThreadedMockSSHServer",
]
