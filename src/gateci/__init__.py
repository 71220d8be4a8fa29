from .dsl import checkout, sh, install, job, matrix, wf, on_push, on_pull_request
from .config import load_workflow, load_workflows
from .runner import Orchestrator, run_workflows
from .model import Event, EventKind, Job, JobResult, JobStatus, Run, RunStatus, Workflow, aggregate
from .errors import CheckoutError, CommandFailure, ConfigurationError, JobError, ToolInstallError

__all__ = [
    "checkout", "sh", "install", "job", "matrix", "wf", "on_push", "on_pull_request",
    "load_workflow", "load_workflows", "Orchestrator", "run_workflows",
    "Event", "EventKind", "Job", "JobResult", "JobStatus", "Run", "RunStatus", "Workflow", "aggregate",
    "CheckoutError", "CommandFailure", "ConfigurationError", "JobError", "ToolInstallError",
]
