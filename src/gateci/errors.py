# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Optional


class ConfigurationError(Exception):
    """Malformed pipeline definition. Raised at load time, before any job starts."""

    def __init__(self, message: str, *, source: Optional[str] = None, details: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.source = source
        self.details = list(details or [])

    def __str__(self) -> str:
        head = f"{self.source}: {self.message}" if self.source else self.message
        if not self.details:
            return head
        return "\n".join([head, *(f"  {d}" for d in self.details)])


@dataclass
class JobError(Exception):
    """
    Structured job-scoped error with enough context for:
      - clean CLI output
      - the JobResult log/exit_code
      - debugging without full tracebacks

    Contained by the orchestrator: terminates only the owning job.
    """
    job: str
    step: Optional[str]
    message: str
    exit_code: Optional[int] = None
    details: dict = field(default_factory=dict)

    kind: ClassVar[str] = "job_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        if self.exit_code is not None:
            lines.append(f"exit_code={self.exit_code}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class CheckoutError(JobError):
    kind = "checkout_error"


class ToolInstallError(JobError):
    kind = "tool_install_error"


class CommandFailure(JobError):
    kind = "command_failure"


class CancelledError(JobError):
    kind = "cancelled"
