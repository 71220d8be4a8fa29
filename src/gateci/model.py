# model.py
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import ClassVar, Dict, Mapping, Optional, Tuple, Union


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _frozen_env(env: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    # force values to str, same as the builder did for hashing/env compatibility
    return MappingProxyType({str(k): str(v) for k, v in (env or {}).items()})


# ---------------------------------------------------------------------
# Events / triggers
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """
    An incoming repository event (push or pull request).

    `commit` is what checkout materializes; without one it is the tip of `branch`.
    """
    kind: EventKind
    branch: str
    commit: Optional[str] = None
    repo: str = "."

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EventKind(self.kind))
        if not self.commit:
            object.__setattr__(self, "commit", self.branch)


@dataclass(frozen=True)
class Trigger:
    """Event/branch filter deciding whether a Run is created."""
    event: EventKind
    branches: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "event", EventKind(self.event))
        object.__setattr__(self, "branches", tuple(self.branches))

    def matches(self, event: Event) -> bool:
        if event.kind != self.event:
            return False
        return any(fnmatchcase(event.branch, pattern) for pattern in self.branches)


# ---------------------------------------------------------------------
# Steps (closed variant: Checkout | RunCommand | InstallTool)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Checkout:
    """Materialize the repository at the event's commit in the job workspace."""
    kind: ClassVar[str] = "checkout"
    name: str = "Checkout"


@dataclass(frozen=True)
class RunCommand:
    """Run an opaque shell command; its exit code is authoritative."""
    kind: ClassVar[str] = "run_command"
    command: str
    name: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", _frozen_env(self.env))

    @property
    def display_name(self) -> str:
        return self.name or self.command


@dataclass(frozen=True)
class InstallTool(RunCommand):
    """Install an external tool. Same shape as RunCommand, different failure."""
    kind: ClassVar[str] = "install_tool"


Step = Union[Checkout, RunCommand, InstallTool]


def step_label(step: Step) -> str:
    if isinstance(step, Checkout):
        return step.name
    return step.display_name


# ---------------------------------------------------------------------
# Jobs / workflows
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Job:
    """A CI job: an isolated, ordered sequence of steps plus its environment."""
    name: str
    steps: Tuple[Step, ...]
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "env", _frozen_env(self.env))


@dataclass(frozen=True)
class Workflow:
    """
    One loaded pipeline definition: triggers + jobs.

    Frozen after load. A new definition requires a fresh load.
    """
    name: str
    triggers: Tuple[Trigger, ...]
    jobs: Tuple[Job, ...]
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "triggers", tuple(self.triggers))
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "env", _frozen_env(self.env))

    def matches(self, event: Event) -> bool:
        return any(t.matches(event) for t in self.triggers)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ---------------------------------------------------------------------
# Runs / results
# ---------------------------------------------------------------------

@dataclass
class JobResult:
    job_name: str
    status: JobStatus = JobStatus.PENDING
    exit_code: Optional[int] = None
    log: str = ""
    error: Optional[str] = None
    failed_step: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, object]:
        return {
            "job_name": self.job_name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "log": self.log,
            "error": self.error,
            "failed_step": self.failed_step,
            "duration": self.duration,
        }


def aggregate(results: Mapping[str, JobResult] | list[JobResult]) -> RunStatus:
    """
    Reduce job results to the run's overall status.

    succeeded iff every result succeeded; any failure makes the run failed.
    """
    values = list(results.values()) if isinstance(results, Mapping) else list(results)
    statuses = [r.status for r in values]
    if any(s == JobStatus.FAILED for s in statuses):
        return RunStatus.FAILED
    if all(s == JobStatus.SUCCEEDED for s in statuses):
        return RunStatus.SUCCEEDED
    if any(s != JobStatus.PENDING for s in statuses):
        return RunStatus.RUNNING
    return RunStatus.PENDING


@dataclass
class Run:
    """One invocation of a workflow for a matched event."""
    workflow: Workflow
    event: Event
    results: Dict[str, JobResult]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @classmethod
    def start(cls, workflow: Workflow, event: Event, run_id: Optional[str] = None) -> "Run":
        results = {j.name: JobResult(job_name=j.name) for j in workflow.jobs}
        if run_id is None:
            return cls(workflow=workflow, event=event, results=results)
        return cls(workflow=workflow, event=event, results=results, id=run_id)

    @property
    def status(self) -> RunStatus:
        return aggregate(self.results)

    @property
    def exit_code(self) -> int:
        return 1 if self.status == RunStatus.FAILED else 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def to_dict(self) -> Dict[str, object]:
        return {
            "run_id": self.id,
            "workflow": self.workflow.name,
            "event": self.event.kind.value,
            "branch": self.event.branch,
            "commit": self.event.commit,
            "status": self.status.value,
            "jobs": [r.to_dict() for r in self.results.values()],
        }
