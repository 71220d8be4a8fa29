# agent/agent.py
from __future__ import annotations

import signal
import time
from pathlib import Path
from typing import Dict, List, Optional

from gateci.model import Run, Workflow
from gateci.runner import Orchestrator
from gateci.ui.console import get_console

from .api_client import APIClient, APIError
from .models import ClaimedRun, job_report


class Agent:
    """gateci agent that claims queued runs from the gateway and executes them."""

    def __init__(
        self,
        api_url: str,
        agent_id: str,
        workflows: List[Workflow],
        poll_interval: int = 5,
        *,
        work_root: str | Path = ".gateci/agent_work",
        max_workers: int | None = None,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize agent.

        Args:
            api_url: Base URL of the gateway
            agent_id: Unique identifier for this agent instance
            workflows: Frozen workflow definitions (same files the gateway loaded)
            poll_interval: Seconds to wait between polls when no runs are queued
        """
        self.api_client = APIClient(api_url, agent_id)
        self.workflows: Dict[str, Workflow] = {wf.name: wf for wf in workflows}
        self.poll_interval = poll_interval
        self.work_root = Path(work_root)
        self.max_workers = max_workers
        self.running = True
        self.current: Optional[Run] = None

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Stop polling; cancel the run in progress (its jobs end as failed)."""
        console = get_console()
        console.print_info(f"\nReceived signal {signum}, shutting down gracefully...")
        self.running = False
        if self.current is not None:
            self.current.cancel()

    def run(self) -> None:
        """Run the agent loop."""
        console = get_console()
        console.print_agent_started(
            agent_id=self.api_client.agent_id,
            api=self.api_client.base_url,
            poll_interval=self.poll_interval,
        )

        while self.running:
            try:
                claimed = self.api_client.claim_run()
                if claimed:
                    self.execute_claim(claimed)
                else:
                    time.sleep(self.poll_interval)
            except APIError as e:
                console.print_error(
                    "API error",
                    str(e),
                    suggestion="Check gateway connectivity and retry.",
                )
                time.sleep(self.poll_interval)

        console.print_info("Agent stopped.")

    def execute_claim(self, claimed: ClaimedRun) -> dict:
        """Execute one claimed run and report every job's result."""
        console = get_console()
        console.print_run_claimed(claimed.run_id, claimed.workflow)

        wf = self.workflows.get(claimed.workflow)
        if wf is None:
            console.print_error(
                "Unknown workflow",
                f"This agent has no workflow named {claimed.workflow!r}.",
                details=[f"Known: {sorted(self.workflows)}"],
            )
            # unreported jobs are recorded as failed by the gateway
            return self.api_client.complete_run(claimed.run_id, [])

        orchestrator = Orchestrator(
            wf,
            work_root=self.work_root,
            max_workers=self.max_workers,
            console=console,
        )
        run = orchestrator.on_event(claimed.event, run_id=claimed.run_id)
        if run is None:
            console.print_error(
                "Trigger mismatch",
                f"Workflow {wf.name!r} does not match {claimed.event_kind.value} on {claimed.branch}.",
            )
            return self.api_client.complete_run(claimed.run_id, [])

        self.current = run
        try:
            orchestrator.execute(run)
        except KeyboardInterrupt:
            # every job is terminal (cancelled ones failed); report before stopping
            try:
                self.api_client.complete_run(run.id, [job_report(r) for r in run.results.values()])
            except APIError as e:
                console.print_error("API error", f"Could not report interrupted run {run.id}: {e}")
            raise
        finally:
            self.current = None
        console.print_results(run)

        return self.api_client.complete_run(run.id, [job_report(r) for r in run.results.values()])


def run_agent(
    api_url: str,
    agent_id: str,
    workflows: List[Workflow],
    poll_interval: int = 5,
    **options,
) -> None:
    """
    Run the gateci agent loop.

    Args:
        api_url: Base URL of the gateway
        agent_id: Unique identifier for this agent instance
        workflows: Frozen workflow definitions
        poll_interval: Seconds to wait between polls when no runs are queued
    """
    agent = Agent(api_url, agent_id, workflows, poll_interval, **options)
    agent.run()
