# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import List

import click

from gateci.config import find_workflow_files, load_workflows
from gateci.errors import ConfigurationError
from gateci.git_facts.git import get_current_ref, is_repo
from gateci.model import Event, EventKind, Run, Workflow
from gateci.runner import DEFAULT_WORK_ROOT, Orchestrator, overall_exit_code
from gateci.ui.console import Console, get_console, set_console

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def discover_workflows(workflow_args: tuple[str, ...]) -> List[Path]:
    """
    Resolve workflow files from --workflow arguments, or discover them.

    Raises:
        SystemExit: If a workflow cannot be found
    """
    console = get_console()

    if workflow_args:
        paths = []
        for arg in workflow_args:
            path = Path(arg)
            if not path.exists():
                console.print_error(
                    "Workflow file not found",
                    f"Could not find workflow file: {arg}",
                    suggestion="Create a workflow file or specify a different path:\n  gateci run --workflow gateci.yml",
                )
                sys.exit(EXIT_CONFIG_ERROR)
            paths.append(path)
        return paths

    found = find_workflow_files(".")
    if not found:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  gateci.yml / gateci.yaml",
                "  *_workflow.py",
                "  .gateci/workflows/*.yml",
            ],
            suggestion="Create a workflow file or specify one explicitly:\n  gateci run --workflow my_workflow.yml",
        )
        sys.exit(EXIT_CONFIG_ERROR)
    return found


def _load(workflow_args: tuple[str, ...]) -> List[Workflow]:
    console = get_console()
    paths = discover_workflows(workflow_args)
    try:
        return load_workflows(paths)
    except ConfigurationError as e:
        console.print_error(
            "Invalid workflow",
            f"{e.source}: {e.message}" if e.source else e.message,
            details=e.details or None,
        )
        sys.exit(EXIT_CONFIG_ERROR)


def _event(event: str, branch: str | None, commit: str | None, repo: str) -> Event:
    console = get_console()
    if branch is None:
        try:
            branch = get_current_ref(cwd=repo)
            console.print_debug(f"Using current git branch: {branch}")
        except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
            console.print_error(
                "Could not determine branch",
                "No --branch specified and the current git branch could not be read.",
                suggestion="Specify the branch explicitly:\n  gateci run --branch master",
            )
            sys.exit(EXIT_CONFIG_ERROR)
    if commit is None and Path(repo).is_dir() and not is_repo(repo):
        # a plain directory has no branches; verify the tree as it is
        commit = "HEAD"
    return Event(kind=EventKind(event), branch=branch, commit=commit, repo=repo)


def event_options(f):
    f = click.option("--repo", default=".", show_default=True, help="Repository to check out (path or URL)")(f)
    f = click.option("--commit", default=None, help="Commit/ref to verify (defaults to the event branch; HEAD for a plain directory)")(f)
    f = click.option("--branch", default=None, help="Event branch (defaults to the current git branch)")(f)
    f = click.option(
        "--event",
        "event_kind",
        type=click.Choice([k.value for k in EventKind]),
        default=EventKind.PUSH.value,
        show_default=True,
        help="Event kind",
    )(f)
    f = click.option(
        "--workflow",
        "workflows",
        multiple=True,
        help="Workflow file path (repeatable; defaults to discovered gateci.yml / *_workflow.py)",
    )(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full job logs)",
)
@click.pass_context
def cli(ctx, debug):
    """gateci: build-verification pipeline orchestrator."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@event_options
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--work-dir", default=DEFAULT_WORK_ROOT, show_default=True, help="Root for per-job workspaces")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Do not delete job workspaces afterwards")
@click.pass_context
def run(ctx, workflows, event_kind, branch, commit, repo, workers, work_dir, keep_workspaces):
    """Run every workflow whose triggers match the event."""
    console = get_console()
    loaded = _load(workflows)
    event = _event(event_kind, branch, commit, repo)

    runs: List[Run] = []
    try:
        for wf in loaded:
            orchestrator = Orchestrator(
                wf,
                work_root=work_dir,
                max_workers=workers,
                keep_workspaces=keep_workspaces,
                console=console,
            )
            current = orchestrator.on_event(event)
            if current is None:
                console.print_no_match(wf, event.kind.value, event.branch)
                continue
            runs.append(current)
            orchestrator.execute(current)
            console.print_results(current)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        for r in runs:
            console.print_results(r)
        sys.exit(EXIT_INTERRUPTED)

    if not runs:
        console.print_info("No workflow matched; nothing to verify.")
    sys.exit(overall_exit_code(runs))


@cli.command()
@click.option("--workflow", "workflows", multiple=True, help="Workflow file path (repeatable)")
def validate(workflows):
    """Load and validate workflow definitions without running anything."""
    console = get_console()
    for wf in _load(workflows):
        console.print_header(wf.name)
        for t in wf.triggers:
            console.print_info(f"on {t.event.value}: {', '.join(t.branches)}")
        console.print_plan(wf, [j.name for j in wf.jobs])
    console.print_info("\nOK")


@cli.command()
@event_options
def plan(workflows, event_kind, branch, commit, repo):
    """Show which workflows and jobs an event would run."""
    console = get_console()
    loaded = _load(workflows)
    event = _event(event_kind, branch, commit, repo)
    matched = 0
    for wf in loaded:
        if wf.matches(event):
            matched += 1
            console.print_plan(wf, [j.name for j in wf.jobs])
        else:
            console.print_no_match(wf, event.kind.value, event.branch)
    if not matched:
        console.print_info("No workflow matched; nothing to verify.")


@cli.command()
@click.option("--api", required=True, help="Gateway base URL (e.g., http://localhost:8000)")
@click.option("--workflow", "workflows", multiple=True, help="Workflow file path (repeatable)")
@click.option("--agent-id", default=None, help="Unique agent identifier (defaults to hostname)")
@click.option("--poll-interval", default=5, type=int, help="Polling interval in seconds when no runs are queued")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--work-dir", default=".gateci/agent_work", show_default=True, help="Root for per-job workspaces")
@click.pass_context
def agent(ctx, api, workflows, agent_id, poll_interval, workers, work_dir):
    """Run a gateci agent loop that claims and executes queued runs."""
    import socket
    from gateci.agent.agent import run_agent

    console = get_console()
    loaded = _load(workflows)

    if not agent_id:
        agent_id = socket.gethostname()

    try:
        run_agent(api, agent_id, loaded, poll_interval=poll_interval, max_workers=workers, work_root=work_dir)
    except KeyboardInterrupt:
        console.print_info("\nAgent stopped by user")
        sys.exit(0)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
