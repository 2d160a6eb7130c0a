"""
Platform helpers: path expansion and SSH agent socket discovery.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

AGENT_SOCK_ENV = "SSH_AUTH_SOCK"


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def expand_path(path: str | Path) -> Path:
    """
    Expand ~ (and %VAR% on Windows) in a local path.
    """
    path_str = str(path)

    if is_windows():
        path_str = os.path.expandvars(path_str)

    return Path(path_str).expanduser()


def get_agent_path() -> str | None:
    """
    Return the agent socket path from SSH_AUTH_SOCK, or None if unset.
    """
    return os.environ.get(AGENT_SOCK_ENV) or None
