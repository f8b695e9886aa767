# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to derive a default trigger ref when none is passed, so
# nothing else in gatedci calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed; callers decide what a
    missing answer means.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref for what is checked out.

    - on a branch        -> refs/heads/<branch>
    - detached on a tag  -> refs/tags/<tag>
    - detached elsewhere -> the commit SHA
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        pass

    try:
        tag = _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd)
        return f"refs/tags/{tag}"
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def remote_url(name: str = "origin", cwd: Optional[str] = None) -> str:
    """URL of a configured remote."""
    return _git(["remote", "get-url", name], cwd=cwd)


def repo_name(cwd: Optional[str] = None) -> str:
    """Short repository name for headers: remote name if any, else the directory."""
    try:
        return remote_url(cwd=cwd).rstrip("/").split("/")[-1].removesuffix(".git")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(cwd or ".").resolve().name
