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

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
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


def is_repo(path: str | Path) -> bool:
    """True if `path` is inside a git work tree (or is a bare/remote URL we leave to git)."""
    try:
        return _git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        return False


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the Git repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD SHA when detached.

    Used as the default branch for events raised from the CLI.
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd)
    return ref


def clone(source: str, dest: Path) -> None:
    """Clone `source` (path or URL) into `dest` without checking out a tree."""
    _git(["clone", "--quiet", "--no-checkout", source, str(dest)])


def resolve_commit(ref: str, cwd: str | Path) -> str:
    """
    Full SHA of `ref` in the clone at `cwd`.

    A fresh clone only has a local branch for the remote HEAD; other branches
    live under origin/, so they are tried second.

    Raises:
        subprocess.CalledProcessError: `ref` names no commit
    """
    try:
        return _git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=cwd)
    except subprocess.CalledProcessError:
        return _git(["rev-parse", "--verify", f"origin/{ref}^{{commit}}"], cwd=cwd)


def checkout_detached(ref: str, cwd: str | Path) -> None:
    """Check out `ref` (commit SHA, tag, or local branch) as a detached HEAD."""
    _git(["checkout", "--quiet", "--detach", ref], cwd=cwd)
