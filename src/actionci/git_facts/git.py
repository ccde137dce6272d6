# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD. Becomes `github.sha` for locally simulated events."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD SHA when detached.

    This is the ref a locally simulated push event carries.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch == "HEAD":
        return head_sha(cwd=cwd)
    return branch


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def current_user(cwd: Optional[str | Path] = None) -> str:
    """`user.name` from git config; used as the actor of local events."""
    return _git(["config", "user.name"], cwd=cwd)


def clone(url: str, dest: Path, ref: Optional[str] = None) -> None:
    """
    Clone `url` into `dest` and check out `ref` when given.

    Raises:
        RuntimeError: if git fails or is not installed
    """
    try:
        _git(["clone", "--quiet", url, str(dest)])
        if ref:
            _git(["checkout", "--quiet", ref], cwd=dest)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"git {' '.join(e.cmd[1:3])} failed: {(e.stderr or '').strip()}") from e
    except FileNotFoundError as e:
        raise RuntimeError("git command not found. Please install Git.") from e
