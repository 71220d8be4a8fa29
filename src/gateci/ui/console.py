"""Console output formatting utilities for gateci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from ..model import JobResult, JobStatus, Run, Workflow


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and full job logs
        """
        self.debug = debug
        # jobs report from worker threads; one block at a time
        self._lock = threading.Lock()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, run: Run) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run ID: {run.id}")
        print(f"Workflow: {run.workflow.name}")
        print(f"Event: {run.event.kind.value} on {run.event.branch} ({run.event.commit})")
        print(f"Jobs: {len(run.results)}")
        print()

    def print_no_match(self, workflow: Workflow, kind: str, branch: str) -> None:
        print(f"Workflow {workflow.name}: no trigger matches {kind} on {branch}, nothing to run")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        with self._lock:
            print(f"JOB STARTED: {name}")

    def print_job_finished(self, result: JobResult) -> None:
        """Print one finished job as a single block."""
        with self._lock:
            print(f"\nJOB FINISHED: {result.job_name}")
            if result.status == JobStatus.SUCCEEDED:
                print("STATUS: success")
            else:
                print("STATUS: failed")
                if result.failed_step:
                    print(f"Step: {result.failed_step}")
                if result.exit_code is not None:
                    print(f"Exit code: {result.exit_code}")
                if result.error:
                    print(f"Error: {result.error}")
            if result.duration is not None:
                print(f"Duration: {result.duration:.1f}s")
            if result.log and (self.debug or result.status == JobStatus.FAILED):
                print(_tail(result.log, None if self.debug else 40))

    def print_results(self, run: Run) -> None:
        """Print final results summary. Every job, in declaration order."""
        print("\n" + "=" * 40)
        print(f"RESULTS ({run.workflow.name})")
        print("=" * 40)
        for result in run.results.values():
            code = "-" if result.exit_code is None else str(result.exit_code)
            print(f"  {result.job_name}: {result.status.value.upper()} (exit={code})")
        print(f"RUN: {run.status.value.upper()}")

    def print_plan(self, workflow: Workflow, job_names: Iterable[str]) -> None:
        print(f"\n{workflow.name}:")
        for name in job_names:
            print(f"  {name}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_agent_started(self, agent_id: str, api: str, poll_interval: int) -> None:
        """Print agent start information."""
        print("\nAGENT STARTED")
        print(f"Agent ID: {agent_id}")
        print(f"API: {api}")
        print(f"Polling every: {poll_interval}s")
        print()

    def print_run_claimed(self, run_id: str, workflow: str) -> None:
        print("\nRUN CLAIMED")
        print(f"Workflow: {workflow}")
        print(f"Run ID: {run_id}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


def _tail(text: str, lines: Optional[int]) -> str:
    rows = text.rstrip("\n").splitlines()
    if lines is None or len(rows) <= lines:
        return "\n".join(rows)
    return "\n".join([f"... ({len(rows) - lines} lines omitted)", *rows[-lines:]])


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
