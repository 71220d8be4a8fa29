# agent/models.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from gateci.model import Event, EventKind, JobResult


@dataclass
class ClaimedRun:
    """A run handed to this agent by the gateway (ClaimedRun response)."""
    run_id: str
    workflow: str
    event_kind: EventKind
    branch: str
    commit: str
    repo: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ClaimedRun:
        """Create ClaimedRun from the gateway's response dictionary."""
        return cls(
            run_id=data["run_id"],
            workflow=data["workflow"],
            event_kind=EventKind(data["event"]),
            branch=data["branch"],
            commit=data.get("commit") or data["branch"],
            repo=data.get("repo", "."),
        )

    @property
    def event(self) -> Event:
        return Event(kind=self.event_kind, branch=self.branch, commit=self.commit, repo=self.repo)


def job_report(result: JobResult) -> Dict[str, Any]:
    """Terminal JobResult -> JobReport payload for /runs/{id}/complete."""
    return {
        "job_name": result.job_name,
        "status": result.status.value,
        "exit_code": result.exit_code,
        "log": result.log,
        "error": result.error,
    }
