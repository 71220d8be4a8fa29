# src/gateci/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .config import validate_workflow
from .errors import ConfigurationError
from .model import Checkout, EventKind, InstallTool, Job, RunCommand, Step, Trigger, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def checkout(name: str = "Checkout") -> Checkout:
    """Check out the triggering commit into the job workspace."""
    return Checkout(name=name)


def sh(
    name: str,
    cmd: str,
    *,
    env: Optional[Dict[str, Any]] = None,
    cwd: str | None = None,
    timeout: float | None = None,
) -> RunCommand:
    """Create a shell step."""
    return RunCommand(command=cmd, name=name, env=env or {}, cwd=cwd, timeout=timeout)


def install(
    name: str,
    cmd: str,
    *,
    env: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
) -> InstallTool:
    """Create a tool installation step. Should be idempotent."""
    return InstallTool(command=cmd, name=name, env=env or {}, timeout=timeout)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(*branches: str) -> Trigger:
    return Trigger(event=EventKind.PUSH, branches=branches)


def on_pull_request(*branches: str) -> Trigger:
    return Trigger(event=EventKind.PULL_REQUEST, branches=branches)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", checkout(), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    env: Optional[Dict[str, Any]] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step")

    return Job(name=name, steps=steps_final, env=env or {})


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("MIRIFLAGS", ["-Zmiri-strict-provenance", "-Zmiri-tree-borrows"]).jobs(
            lambda v: job(f"miri[{v}]", checkout(), sh("miri", "cargo miri test"), env={"MIRIFLAGS": v})
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]

    def variants(self, base: Job) -> List[Job]:
        """Copies of `base`, one per value, with `key=value` overlaid on the env."""
        return [
            Job(
                name=f"{base.name}[{self.key}={v}]",
                steps=base.steps,
                env={**base.env, self.key: str(v)},
            )
            for v in self.values
        ]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job | Sequence[Job],
    name: str = "workflow",
    triggers: Sequence[Trigger] = (),
    env: Optional[Dict[str, Any]] = None,
) -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from gateci import wf, job, sh, checkout, on_push

        def workflow():
            return wf(
                job("build", checkout(), sh("Build", "cargo build")),
                job("lint", checkout(), sh("Clippy", "cargo clippy")),
                name="build",
                triggers=[on_push("master"), on_pull_request("master")],
            )

    Lists of jobs (e.g. from matrix(...).jobs()) are flattened.
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, Job):
            flat.append(j)
        else:
            flat.extend(j)
    return validate_workflow(Workflow(name=name, triggers=triggers, jobs=flat, env=env or {}))
