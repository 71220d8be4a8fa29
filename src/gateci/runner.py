# runner.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional

from .workspace import checkout_working_copy, job_slug
from .errors import CancelledError, CheckoutError, CommandFailure, JobError, ToolInstallError
from .model import (
    Checkout,
    Event,
    InstallTool,
    Job,
    JobResult,
    JobStatus,
    Run,
    RunCommand,
    RunStatus,
    Step,
    Workflow,
    aggregate,
    step_label,
)
from .ui.console import Console, get_console

# event ---> trigger match ---> run ---> jobs (parallel, isolated) ---> gate

DEFAULT_WORK_ROOT = ".gateci/work"

# Exit codes recorded for failures that are not a command's own exit status.
CHECKOUT_EXIT_CODE = 128     # git's "fatal"
TIMEOUT_EXIT_CODE = 124      # coreutils timeout
CANCELLED_EXIT_CODE = 130    # interrupted
INTERNAL_EXIT_CODE = 1

MAX_STEP_OUTPUT = 20_000     # chars of output kept per step


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Orchestrator:
    """
    Scheduler + executor for one frozen workflow.

    - on_event(): trigger matching, creates a Run (or nothing)
    - execute(): every job in its own worker thread and workspace
    - aggregate(): binary gate over the job results
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        source: str | Path | None = None,
        work_root: str | Path = DEFAULT_WORK_ROOT,
        max_workers: int | None = None,
        keep_workspaces: bool = False,
        console: Console | None = None,
    ):
        self.workflow = workflow
        self.source = source
        self.work_root = Path(work_root).expanduser().resolve()
        self.max_workers = max_workers or default_workers()
        self.keep_workspaces = keep_workspaces
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def on_event(self, event: Event, *, run_id: str | None = None) -> Optional[Run]:
        if not self.workflow.matches(event):
            self.console.print_debug(
                f"{self.workflow.name}: {event.kind.value} on {event.branch!r} matches no trigger"
            )
            return None
        return Run.start(self.workflow, event, run_id=run_id)

    def execute(self, run: Run) -> Run:
        self.console.print_run_started(run)
        jobs = list(run.workflow.jobs)
        run_dir = self.work_root / run.id

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gateci-job") as pool:
                futures = {
                    pool.submit(self._run_job, run, job, run_dir / f"{idx:02d}-{job_slug(job.name)}"): job.name
                    for idx, job in enumerate(jobs)
                }
                try:
                    for future in as_completed(futures):
                        name = futures[future]
                        try:
                            future.result()
                        except Exception as e:
                            # anything unexpected stays inside its own job
                            result = run.results[name]
                            result.status = JobStatus.FAILED
                            result.error = f"internal_error: {e}"
                            if not result.exit_code:
                                result.exit_code = INTERNAL_EXIT_CODE
                            result.finished_at = time.time()
                        self.console.print_job_finished(run.results[name])
                except KeyboardInterrupt:
                    # queued and running jobs observe the flag before their next step
                    run.cancel()
                    raise
        finally:
            if not self.keep_workspaces:
                shutil.rmtree(run_dir, ignore_errors=True)

        return run

    @staticmethod
    def aggregate(run: Run) -> RunStatus:
        return aggregate(run.results)

    # ------------------------------------------------------------------
    # Execution primitives
    # ------------------------------------------------------------------

    def _run_job(self, run: Run, job: Job, job_dir: Path) -> JobResult:
        result = run.results[job.name]
        result.started_at = time.time()
        log: List[str] = []

        workspace = job_dir / "workspace"
        tool_dir = job_dir / "tools"

        try:
            if run.cancelled:
                raise CancelledError(
                    job=job.name, step=None, message="run cancelled before job started",
                    exit_code=CANCELLED_EXIT_CODE,
                )
            result.status = JobStatus.RUNNING
            self.console.print_job_start(job.name)
            workspace.mkdir(parents=True, exist_ok=True)
            tool_dir.mkdir(parents=True, exist_ok=True)

            for step in job.steps:
                label = step_label(step)
                if run.cancelled:
                    raise CancelledError(
                        job=job.name, step=label, message="run cancelled",
                        exit_code=CANCELLED_EXIT_CODE,
                    )
                log.append(f"▶ {label}")
                output = self._run_step(run, job, step, workspace, tool_dir)
                if output:
                    log.append(output.rstrip("\n"))

            result.status = JobStatus.SUCCEEDED
            result.exit_code = 0

        except JobError as e:
            if e.details.get("output"):
                log.append(str(e.details["output"]).rstrip("\n"))
            log.append(f"✗ {e.kind}: {e.message}")
            result.status = JobStatus.FAILED
            result.exit_code = e.exit_code
            result.error = f"{e.kind}: {e.message}"
            result.failed_step = e.step

        finally:
            result.log = "\n".join(log)
            result.finished_at = time.time()
            if not self.keep_workspaces:
                shutil.rmtree(job_dir, ignore_errors=True)

        return result

    def _run_step(self, run: Run, job: Job, step: Step, workspace: Path, tool_dir: Path) -> str:
        label = step_label(step)

        if isinstance(step, Checkout):
            source = self.source if self.source is not None else run.event.repo
            try:
                checkout_working_copy(source, run.event.commit, workspace)
            except (RuntimeError, OSError) as e:
                raise CheckoutError(
                    job=job.name, step=label, message=str(e),
                    exit_code=CHECKOUT_EXIT_CODE,
                    details={"source": str(source), "ref": run.event.commit},
                ) from e
            return f"checked out {run.event.commit} from {source}"

        if not isinstance(step, RunCommand):
            raise TypeError(f"unknown step type: {type(step).__name__}")
        # InstallTool is a RunCommand; its failure is a different error
        error_cls = ToolInstallError if isinstance(step, InstallTool) else CommandFailure

        cwd = (workspace / (step.cwd or ".")).resolve()
        if not cwd.is_relative_to(workspace.resolve()):
            raise error_cls(
                job=job.name, step=label, message=f"working directory is outside the workspace: {step.cwd}",
                exit_code=INTERNAL_EXIT_CODE,
            )
        if not cwd.is_dir():
            raise error_cls(
                job=job.name, step=label, message=f"working directory not found: {cwd}",
                exit_code=INTERNAL_EXIT_CODE,
            )

        env = self._environment(run, job, step, workspace, tool_dir)
        exit_code, output, timed_out = _run_shell(step.command, cwd=cwd, env=env, timeout=step.timeout)

        if timed_out:
            raise error_cls(
                job=job.name, step=label, message=f"timed out after {step.timeout}s: {step.command}",
                exit_code=TIMEOUT_EXIT_CODE, details={"output": output},
            )
        if exit_code != 0:
            raise error_cls(
                job=job.name, step=label, message=f"exited with {exit_code}: {step.command}",
                exit_code=exit_code, details={"output": output},
            )
        return output

    def _environment(self, run: Run, job: Job, step: RunCommand, workspace: Path, tool_dir: Path) -> Dict[str, str]:
        """process env < workflow env < job env < step overrides, plus the run context."""
        env = os.environ.copy()
        env.update(run.workflow.env)
        env.update(job.env)
        env.update(step.env)
        env.update(
            {
                "CI": "true",
                "GATECI": "true",
                "GATECI_RUN_ID": run.id,
                "GATECI_WORKFLOW": run.workflow.name,
                "GATECI_JOB": job.name,
                "GATECI_EVENT": run.event.kind.value,
                "GATECI_BRANCH": run.event.branch,
                "GATECI_COMMIT": run.event.commit,
                "GATECI_WORKSPACE": str(workspace),
                "GATECI_TOOL_DIR": str(tool_dir),
            }
        )
        # tools installed by this job (pip --target / cargo install --root land in bin/)
        env["PATH"] = os.pathsep.join(
            p for p in (str(tool_dir / "bin"), str(tool_dir), env.get("PATH", "")) if p
        )
        return env


def _run_shell(command: str, *, cwd: Path, env: Dict[str, str], timeout: float | None) -> tuple[int, str, bool]:
    """Run `command` through the shell. Returns (exit_code, combined output tail, timed_out)."""
    posix = os.name == "posix"
    with subprocess.Popen(
        command,
        shell=True,
        cwd=str(cwd),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
        start_new_session=posix,  # own process group so a timeout kills the whole tree
    ) as proc:
        timed_out = False
        try:
            output, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            if posix:
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
            else:
                proc.kill()
            output, _ = proc.communicate()

    return proc.returncode, (output or "")[-MAX_STEP_OUTPUT:], timed_out


def run_workflows(
    workflows: List[Workflow],
    event: Event,
    **options,
) -> List[Run]:
    """
    Convenience: match `event` against every workflow and execute the matches.

    Workflows that do not match produce no run.
    """
    runs: List[Run] = []
    for wf in workflows:
        orchestrator = Orchestrator(wf, **options)
        run = orchestrator.on_event(event)
        if run is None:
            continue
        orchestrator.execute(run)
        orchestrator.console.print_results(run)
        runs.append(run)
    return runs


def overall_exit_code(runs: List[Run]) -> int:
    """Process exit contract: nonzero iff an aggregated run failed."""
    return 1 if any(r.status == RunStatus.FAILED for r in runs) else 0
