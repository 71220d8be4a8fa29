"""
Pytest configuration and shared fixtures.

- a plain source tree standing in for the repository under verification
- a git repository with a branch besides the checked-out one
- an orchestrator factory writing workspaces under tmp_path
- gateway settings pointed at a throwaway sqlite file (set before import)
"""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='gateci-test-')}/gateci.db"
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from gateci.dsl import checkout, job, on_pull_request, on_push, sh, wf  # noqa: E402
from gateci.git_facts import git  # noqa: E402
from gateci.model import Event, EventKind  # noqa: E402
from gateci.runner import Orchestrator  # noqa: E402
from gateci.ui.console import Console  # noqa: E402


@pytest.fixture
def source_tree(tmp_path) -> Path:
    """A non-git directory that checkout copies into each job workspace."""
    src = tmp_path / "repo"
    (src / "sub").mkdir(parents=True)
    (src / "README.md").write_text("hello\n")
    (src / "sub" / "inner.txt").write_text("inner\n")
    return src


@pytest.fixture
def push_master(source_tree) -> Event:
    # a plain directory has no branches; its tree is the HEAD
    return Event(kind=EventKind.PUSH, branch="master", commit="HEAD", repo=str(source_tree))


@pytest.fixture
def make_orchestrator(tmp_path):
    def _make(workflow, **kwargs):
        kwargs.setdefault("work_root", tmp_path / "work")
        kwargs.setdefault("max_workers", 4)
        kwargs.setdefault("console", Console(debug=True))
        return Orchestrator(workflow, **kwargs)
    return _make


@pytest.fixture
def build_and_lint():
    """Trigger {push, master} + jobs [build, lint]; the lint command is a parameter."""
    def _make(lint_cmd: str = "true"):
        return wf(
            job("build", checkout(), sh("Build", "test -f README.md")),
            job("lint", checkout(), sh("Lint", lint_cmd)),
            name="build",
            triggers=[on_push("master"), on_pull_request("master")],
        )
    return _make


def run_git(cwd, *args):
    subprocess.run(
        ["git", "-c", "user.name=gateci", "-c", "user.email=gateci@example.invalid", *args],
        cwd=cwd, check=True, capture_output=True,
    )


@pytest.fixture
def git_repo(tmp_path):
    """
    Repository on `master` (VERSION 1 then 2) with a `feature/x` branch
    (VERSION "feature") that is not checked out. Returns (path, first_sha).
    """
    repo = tmp_path / "origin"
    repo.mkdir()
    run_git(repo, "init", "--quiet")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/master")
    (repo / "VERSION").write_text("1\n")
    run_git(repo, "add", "VERSION")
    run_git(repo, "commit", "--quiet", "-m", "first")
    first = git.head_sha(repo)
    (repo / "VERSION").write_text("2\n")
    run_git(repo, "commit", "--quiet", "-am", "second")
    run_git(repo, "checkout", "--quiet", "-b", "feature/x")
    (repo / "VERSION").write_text("feature\n")
    run_git(repo, "commit", "--quiet", "-am", "feature")
    run_git(repo, "checkout", "--quiet", "master")
    return repo, first
