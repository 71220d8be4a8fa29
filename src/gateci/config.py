"""
Workflow loading.

Loads a workflow definition once, validates it, and returns a frozen
`Workflow`. Three source formats are accepted:

  - gateci YAML (`triggers:` / `jobs:` list, see README)
  - GitHub Actions YAML (`on:` / `jobs:` mapping), translated on load
  - Python files defining `workflow()` or `WORKFLOW` built with gateci.dsl
"""

from __future__ import annotations

import itertools
import re
import runpy
from collections import Counter
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .model import Checkout, EventKind, InstallTool, Job, RunCommand, Trigger, Workflow

EnvValue = Union[str, bool, int, float]

WORKFLOW_GLOBS = ("gateci.yml", "gateci.yaml", "*_workflow.py", ".gateci/workflows/*.yml", ".gateci/workflows/*.yaml")


# ---------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------

class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class CheckoutSpec(_Strict):
    kind: Literal["checkout"]
    name: str = "Checkout"


class RunCommandSpec(_Strict):
    kind: Literal["run_command"]
    command: str = Field(min_length=1)
    name: Optional[str] = None
    environment: Dict[str, EnvValue] = Field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class InstallToolSpec(RunCommandSpec):
    kind: Literal["install_tool"]


StepSpec = Annotated[Union[CheckoutSpec, RunCommandSpec, InstallToolSpec], Field(discriminator="kind")]


class TriggerSpec(_Strict):
    event: EventKind
    branches: List[str] = Field(min_length=1)


class JobSpec(_Strict):
    name: str = Field(min_length=1)
    steps: List[StepSpec]
    environment: Dict[str, EnvValue] = Field(default_factory=dict)
    matrix: Dict[str, List[EnvValue]] = Field(default_factory=dict)

    @field_validator("steps")
    @classmethod
    def steps_not_empty(cls, v: list) -> list:
        if not v:
            raise ValueError("job must have at least one step")
        return v

    @field_validator("matrix")
    @classmethod
    def matrix_values_not_empty(cls, v: Dict[str, list]) -> Dict[str, list]:
        empty = sorted(k for k, values in v.items() if not values)
        if empty:
            raise ValueError(f"matrix keys without values: {empty}")
        return v


class WorkflowSpec(_Strict):
    name: Optional[str] = None
    triggers: List[TriggerSpec] = Field(min_length=1)
    environment: Dict[str, EnvValue] = Field(default_factory=dict)
    jobs: List[JobSpec] = Field(min_length=1)


# ---------------------------------------------------------------------
# Conversion to the frozen model
# ---------------------------------------------------------------------

def _env_str(value: EnvValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _env(mapping: Dict[str, EnvValue]) -> Dict[str, str]:
    return {k: _env_str(v) for k, v in mapping.items()}


def _step(spec: Union[CheckoutSpec, RunCommandSpec, InstallToolSpec]):
    if isinstance(spec, CheckoutSpec):
        return Checkout(name=spec.name)
    cls = InstallTool if isinstance(spec, InstallToolSpec) else RunCommand
    return cls(
        command=spec.command,
        name=spec.name,
        env=_env(spec.environment),
        cwd=spec.cwd,
        timeout=spec.timeout,
    )


def expand_matrix(name: str, matrix: Dict[str, List[EnvValue]]) -> List[tuple[str, Dict[str, str]]]:
    """
    One (job name, env overlay) per combination of matrix values.

    Example:
        expand_matrix("miri", {"MIRIFLAGS": ["-Za", "-Zb"]})
        -> [("miri[MIRIFLAGS=-Za]", {...}), ("miri[MIRIFLAGS=-Zb]", {...})]
    """
    if not matrix:
        return [(name, {})]
    keys = list(matrix)
    out = []
    for combo in itertools.product(*(matrix[k] for k in keys)):
        overlay = {k: _env_str(v) for k, v in zip(keys, combo)}
        label = ",".join(f"{k}={v}" for k, v in overlay.items())
        out.append((f"{name}[{label}]", overlay))
    return out


def workflow_from_spec(spec: WorkflowSpec, default_name: str = "workflow") -> Workflow:
    jobs: List[Job] = []
    for job_spec in spec.jobs:
        steps = [_step(s) for s in job_spec.steps]
        base_env = _env(job_spec.environment)
        for name, overlay in expand_matrix(job_spec.name, job_spec.matrix):
            jobs.append(Job(name=name, steps=steps, env={**base_env, **overlay}))

    wf = Workflow(
        name=spec.name or default_name,
        triggers=[Trigger(event=t.event, branches=t.branches) for t in spec.triggers],
        jobs=jobs,
        env=_env(spec.environment),
    )
    return validate_workflow(wf)


def _format_validation_error(e: ValidationError) -> List[str]:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        lines.append(f"{loc or '<root>'}: {err.get('msg')}")
    return lines


def parse_workflow(data: Any, *, default_name: str = "workflow", source: Optional[str] = None) -> Workflow:
    """Validate raw (already YAML-decoded) data into a frozen Workflow."""
    if isinstance(data, dict) and set(data) == {"workflow"}:
        data = data["workflow"]
    if not isinstance(data, dict):
        raise ConfigurationError("workflow definition must be a mapping", source=source)

    if _looks_like_actions(data):
        data = actions_to_native(data, source=source)

    try:
        spec = WorkflowSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            "invalid workflow definition", source=source, details=_format_validation_error(e)
        ) from e
    try:
        return workflow_from_spec(spec, default_name=default_name)
    except ConfigurationError as e:
        e.source = e.source or source
        raise


def validate_workflow(wf: Workflow, *, source: Optional[str] = None) -> Workflow:
    """
    Structural checks shared by every loading path (YAML, Actions, Python DSL).

    Raises:
        ConfigurationError: the run cannot be meaningfully started
    """
    if not wf.name:
        raise ConfigurationError("workflow has no name", source=source)
    if not wf.triggers:
        raise ConfigurationError(f"workflow {wf.name!r} has no triggers", source=source)
    if not wf.jobs:
        raise ConfigurationError(f"workflow {wf.name!r} has no jobs", source=source)

    names = Counter(j.name for j in wf.jobs)
    dupes = sorted(n for n, c in names.items() if c > 1)
    if dupes:
        raise ConfigurationError(f"Duplicate job names found: {dupes}", source=source)

    for t in wf.triggers:
        if not t.branches:
            raise ConfigurationError(f"trigger {t.event.value!r} has no branches", source=source)

    for j in wf.jobs:
        if not j.name:
            raise ConfigurationError("job with empty name", source=source)
        if not j.steps:
            raise ConfigurationError(f"Job '{j.name}' has no steps", source=source)
        for s in j.steps:
            if not isinstance(s, (Checkout, RunCommand)):
                raise ConfigurationError(
                    f"Job '{j.name}' has an unknown step type: {type(s).__name__}", source=source
                )
            if isinstance(s, RunCommand) and not s.command.strip():
                raise ConfigurationError(f"Job '{j.name}' has a step with an empty command", source=source)
    return wf


# ---------------------------------------------------------------------
# GitHub Actions translation
# ---------------------------------------------------------------------

# Keys with no bearing on what a job runs (hosting and token scope) are accepted
# and ignored; anything else gateci cannot honour is rejected.
_ACTIONS_TOP_KEYS = {"name", "run-name", "on", True, "env", "jobs", "permissions"}
_ACTIONS_JOB_KEYS = {"name", "runs-on", "permissions", "env", "steps", "strategy", "needs"}
_ACTIONS_STEP_KEYS = {"id", "name", "run", "uses", "with", "env", "working-directory", "timeout-minutes"}
_ACTIONS_FILTER_KEYS = {"branches"}
_CHECKOUT_WITH_KEYS = {"fetch-depth"}

_ENV_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")
_MATRIX_EXPR = re.compile(r"\$\{\{\s*matrix\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def _looks_like_actions(data: Dict[Any, Any]) -> bool:
    # YAML 1.1 reads a bare `on` key as boolean True
    return ("on" in data or True in data) and isinstance(data.get("jobs"), dict)


def _reject_unknown(mapping: Dict[Any, Any], allowed: set, where: str, source: Optional[str]) -> None:
    extra = [str(k) for k in mapping if k not in allowed]
    if extra:
        raise ConfigurationError(f"{where}: unsupported keys {sorted(extra)}", source=source)


def _reject_expressions(value: Any, where: str, source: Optional[str]) -> None:
    if "${{" in str(value):
        raise ConfigurationError(f"{where}: expressions are not supported: {value!r}", source=source)


def _actions_triggers(on: Any, source: Optional[str]) -> List[Dict[str, Any]]:
    if isinstance(on, str):
        on = {on: None}
    elif isinstance(on, list):
        on = {k: None for k in on}
    if not isinstance(on, dict):
        raise ConfigurationError("`on:` must be a string, list or mapping", source=source)

    triggers = []
    for kind in (EventKind.PUSH.value, EventKind.PULL_REQUEST.value):
        if kind not in on:
            continue
        filters = on[kind] or {}
        if not isinstance(filters, dict):
            raise ConfigurationError(f"`on.{kind}` must be a mapping", source=source)
        _reject_unknown(filters, _ACTIONS_FILTER_KEYS, f"on.{kind}", source)
        # no branch filter means every branch
        branches = filters.get("branches") or ["*"]
        triggers.append({"event": kind, "branches": [str(b) for b in branches]})
    if not triggers:
        raise ConfigurationError("workflow is not triggered by push or pull_request", source=source)
    return triggers


def _actions_matrix(job_id: str, strategy: Any, source: Optional[str]) -> Dict[str, List[Any]]:
    """`strategy.matrix` becomes the native matrix; each key is exported as an env var."""
    if not isinstance(strategy, dict) or not isinstance(strategy.get("matrix"), dict):
        raise ConfigurationError(f"job {job_id!r}: `strategy` needs a `matrix` mapping", source=source)
    _reject_unknown(strategy, {"matrix"}, f"job {job_id!r} strategy", source)
    matrix = strategy["matrix"]
    for key, values in matrix.items():
        if key in ("include", "exclude"):
            raise ConfigurationError(f"job {job_id!r}: matrix `{key}` is not supported", source=source)
        if not _ENV_NAME.match(str(key)):
            raise ConfigurationError(
                f"job {job_id!r}: matrix key {key!r} is not a valid environment variable name", source=source
            )
        if not isinstance(values, list):
            raise ConfigurationError(f"job {job_id!r}: matrix {key!r} must be a list", source=source)
    return {str(k): v for k, v in matrix.items()}


def _actions_step(
    job_id: str, idx: int, step: Dict[str, Any], matrix_keys: set, source: Optional[str]
) -> Dict[str, Any]:
    where = f"job {job_id!r} step {idx}"
    _reject_unknown(step, _ACTIONS_STEP_KEYS, where, source)
    uses = step.get("uses")
    name = step.get("name")
    if uses:
        if not str(uses).startswith("actions/checkout"):
            raise ConfigurationError(f"{where}: unsupported action {uses!r}", source=source)
        # gateci always clones the full history
        with_ = step.get("with") or {}
        if not isinstance(with_, dict):
            raise ConfigurationError(f"{where}: `with` must be a mapping", source=source)
        _reject_unknown(with_, _CHECKOUT_WITH_KEYS, f"{where} with", source)
        return {"kind": "checkout", "name": name or "Checkout"}
    if "with" in step:
        raise ConfigurationError(f"{where}: `with` only applies to `uses` steps", source=source)

    run = step.get("run")
    if not run:
        raise ConfigurationError(f"{where}: step needs `run` or `uses`", source=source)

    def matrix_var(m: re.Match) -> str:
        if m.group(1) not in matrix_keys:
            raise ConfigurationError(f"{where}: unknown matrix key {m.group(1)!r}", source=source)
        return "${" + m.group(1) + "}"

    command = _MATRIX_EXPR.sub(matrix_var, str(run).strip())
    _reject_expressions(command, where, source)

    kind = "install_tool" if name and str(name).lower().startswith("install") else "run_command"
    out: Dict[str, Any] = {"kind": kind, "command": command, "name": name}
    if step.get("env"):
        for value in step["env"].values():
            _reject_expressions(value, where, source)
        out["environment"] = step["env"]
    if step.get("working-directory"):
        _reject_expressions(step["working-directory"], where, source)
        out["cwd"] = step["working-directory"]
    if step.get("timeout-minutes"):
        out["timeout"] = float(step["timeout-minutes"]) * 60
    return out


def actions_to_native(data: Dict[Any, Any], *, source: Optional[str] = None) -> Dict[str, Any]:
    """
    Translate a GitHub Actions workflow mapping into the native schema.

    Only the subset gateci can honour is accepted; an `if:`, `continue-on-error`,
    `shell`, `branches-ignore` or any other key outside that subset raises
    ConfigurationError instead of being dropped. `${{ matrix.KEY }}` in a `run`
    command becomes `${KEY}`; every other expression is rejected.
    """
    _reject_unknown(data, _ACTIONS_TOP_KEYS, "workflow", source)
    triggers = _actions_triggers(data.get("on", data.get(True)), source)
    jobs = []
    for job_id, job in data["jobs"].items():
        job = job or {}
        if job.get("needs"):
            raise ConfigurationError(
                f"job {job_id!r}: `needs` is not supported, jobs run independently", source=source
            )
        _reject_unknown(job, _ACTIONS_JOB_KEYS, f"job {job_id!r}", source)
        matrix = _actions_matrix(job_id, job["strategy"], source) if "strategy" in job else {}
        steps = [
            _actions_step(job_id, i, s or {}, set(matrix), source)
            for i, s in enumerate(job.get("steps") or [])
        ]
        env = job.get("env") or {}
        for value in env.values():
            _reject_expressions(value, f"job {job_id!r} env", source)
        native_job: Dict[str, Any] = {"name": str(job_id), "steps": steps, "environment": env}
        if matrix:
            native_job["matrix"] = matrix
        jobs.append(native_job)

    env = data.get("env") or {}
    for value in env.values():
        _reject_expressions(value, "workflow env", source)
    native: Dict[str, Any] = {
        "triggers": triggers,
        "environment": env,
        "jobs": jobs,
    }
    if data.get("name"):
        native["name"] = str(data["name"])
    return native


# ---------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------

def _load_python_workflow(path: Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)
    """
    module_name = f"gateci_workflow_{path.stem}"
    wf = None
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            wf = globals_dict["workflow"]()
        elif "WORKFLOW" in globals_dict:
            wf = globals_dict["WORKFLOW"]
    except ConfigurationError as e:
        e.source = e.source or str(path)
        raise

    if not isinstance(wf, Workflow):
        raise ConfigurationError(
            "Workflow file must return/define a Workflow. "
            "Define workflow() -> Workflow or WORKFLOW = wf(...).",
            source=str(path),
        )
    return validate_workflow(wf, source=str(path))


def load_workflow(path: str | Path) -> Workflow:
    """Load, validate and freeze one workflow definition file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return _load_python_workflow(wf_path)
    if wf_path.suffix not in (".yml", ".yaml"):
        raise ConfigurationError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    try:
        with open(wf_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML: {e}", source=str(wf_path)) from e

    return parse_workflow(raw, default_name=wf_path.stem, source=str(wf_path))


def load_workflows(paths: List[str | Path]) -> List[Workflow]:
    return [load_workflow(p) for p in paths]


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """
    Find workflow files in `directory`.

    Looks for gateci.yml / gateci.yaml, *_workflow.py and .gateci/workflows/*.yml.
    """
    root = Path(directory)
    found: List[Path] = []
    for pattern in WORKFLOW_GLOBS:
        for p in sorted(root.glob(pattern)):
            if p.is_file() and p not in found:
                found.append(p)
    return found
