# workspace.py
from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path

from .git_facts import git

# Never copied into a job workspace when the source is a plain directory.
COPY_IGNORE = (".git", ".gateci", "__pycache__")

_URL_RE = re.compile(r"^([a-z][a-z0-9+.-]*://|[\w.-]+@[\w.-]+:)", re.IGNORECASE)


def job_slug(name: str) -> str:
    """Filesystem-safe directory name for a job (variant names contain [ = ,)."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-")
    return slug or "job"


def _is_remote(source: str) -> bool:
    return bool(_URL_RE.match(source))


def checkout_working_copy(source: str | Path, ref: str, dest: Path) -> Path:
    """
    Materialize an isolated working copy of `source` at `ref` into `dest`.

    - git repository (local path or URL): fresh clone, then detached checkout of `ref`
      (a commit, tag, or any branch of the source)
    - plain directory: full copy (only valid for ref "HEAD")

    Each call produces its own tree. Nothing is shared between callers.

    Raises:
        RuntimeError: source unreachable or ref not found
    """
    source_s = str(source)
    if dest.exists():
        shutil.rmtree(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    if _is_remote(source_s) or git.is_repo(source_s):
        clone_from = source_s
        if not _is_remote(source_s):
            clone_from = str(git.repo_root(source_s))
        try:
            git.clone(clone_from, dest)
            git.checkout_detached(git.resolve_commit(ref, dest), dest)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise RuntimeError(f"git {e.cmd[1]} failed: {stderr or e}") from e
        except FileNotFoundError as e:
            raise RuntimeError("git command not found. Please install Git.") from e
        return dest

    src = Path(source_s).expanduser()
    if not src.is_dir():
        raise RuntimeError(f"repository not found: {source_s}")
    if ref not in ("HEAD", ""):
        raise RuntimeError(f"{source_s} is not a git repository; cannot check out {ref!r}")

    ignored = list(COPY_IGNORE)
    try:
        # workspace root living inside the source tree must not be copied into itself
        ignored.append(dest.resolve().relative_to(src.resolve()).parts[0])
    except ValueError:
        pass

    shutil.copytree(src, dest, ignore=shutil.ignore_patterns(*ignored), symlinks=True)
    return dest
