# git.py
# Small, focused wrapper around the Git CLI for facts about the local
# checkout (used by the CLI to fill in trigger defaults). Stages do their git
# work through the run's command executor instead.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD. Used as the trigger commit for local runs."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> str:
    """
    Name of the checked-out branch.

    Raises:
        ValueError: HEAD is detached
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if name == "HEAD":
        raise ValueError("HEAD is detached; pass --branch explicitly")
    return name


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)
