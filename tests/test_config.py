"""
Tests for workflow loading: native YAML, GitHub Actions translation,
Python workflow files and discovery.
"""

import textwrap
from pathlib import Path

import pytest

from gateci.config import (
    expand_matrix,
    find_workflow_files,
    load_workflow,
    load_workflows,
    parse_workflow,
)
from gateci.errors import ConfigurationError
from gateci.model import Checkout, Event, EventKind, InstallTool, RunCommand

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text).lstrip())
    return path


BUILD_AND_LINT = """
    name: build
    triggers:
      - {event: push, branches: [master]}
      - {event: pull_request, branches: [master]}
    environment:
      CARGO_TERM_COLOR: always
    jobs:
      - name: build
        steps:
          - {kind: checkout}
          - {kind: run_command, name: Build, command: cargo build}
      - name: lint
        environment: {RUSTFLAGS: -Dwarnings}
        steps:
          - {kind: checkout}
          - {kind: run_command, command: cargo clippy, timeout: 600, cwd: crate}
"""


# ===================================================================
# Native format
# ===================================================================

class TestNativeYaml:

    def test_load_freezes_definition(self, tmp_path):
        wf = load_workflow(write(tmp_path / "gateci.yml", BUILD_AND_LINT))

        assert wf.name == "build"
        assert [j.name for j in wf.jobs] == ["build", "lint"]
        assert wf.env["CARGO_TERM_COLOR"] == "always"
        assert [(t.event, t.branches) for t in wf.triggers] == [
            (EventKind.PUSH, ("master",)),
            (EventKind.PULL_REQUEST, ("master",)),
        ]

        build, lint = wf.jobs
        assert isinstance(build.steps[0], Checkout)
        assert build.steps[1] == RunCommand(command="cargo build", name="Build")
        assert lint.env["RUSTFLAGS"] == "-Dwarnings"
        assert lint.steps[1].timeout == 600
        assert lint.steps[1].cwd == "crate"

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = write(tmp_path / "nightly.yaml", """
            triggers: [{event: push, branches: ["release/*"]}]
            jobs:
              - name: a
                steps: [{kind: run_command, command: "true"}]
        """)
        wf = load_workflow(path)
        assert wf.name == "nightly"
        assert wf.matches(Event(kind=EventKind.PUSH, branch="release/1.0"))
        assert not wf.matches(Event(kind=EventKind.PUSH, branch="master"))

    def test_workflow_wrapper_key(self):
        data = {
            "workflow": {
                "name": "wrapped",
                "triggers": [{"event": "push", "branches": ["master"]}],
                "jobs": [{"name": "a", "steps": [{"kind": "checkout"}]}],
            }
        }
        assert parse_workflow(data).name == "wrapped"

    def test_install_tool_step(self):
        data = {
            "triggers": [{"event": "push", "branches": ["master"]}],
            "jobs": [{"name": "typos", "steps": [
                {"kind": "install_tool", "name": "Install Typo", "command": "cargo install typos-cli"},
                {"kind": "run_command", "name": "Run Typo", "command": "typos"},
            ]}],
        }
        steps = parse_workflow(data).jobs[0].steps
        assert isinstance(steps[0], InstallTool)
        assert type(steps[1]) is RunCommand

    def test_environment_values_become_strings(self):
        data = {
            "triggers": [{"event": "push", "branches": ["master"]}],
            "environment": {"VERBOSE": True, "QUIET": False, "LEVEL": 3, "RATIO": 0.5},
            "jobs": [{"name": "a", "steps": [{"kind": "checkout"}]}],
        }
        env = dict(parse_workflow(data).env)
        assert env == {"VERBOSE": "true", "QUIET": "false", "LEVEL": "3", "RATIO": "0.5"}


# ===================================================================
# Matrix expansion
# ===================================================================

class TestMatrix:

    def test_no_matrix_is_single_job(self):
        assert expand_matrix("build", {}) == [("build", {})]

    def test_cartesian_product_in_declaration_order(self):
        variants = expand_matrix("miri", {"A": ["1", "2"], "B": ["x", "y"]})
        assert [name for name, _ in variants] == [
            "miri[A=1,B=x]", "miri[A=1,B=y]", "miri[A=2,B=x]", "miri[A=2,B=y]",
        ]
        assert variants[1][1] == {"A": "1", "B": "y"}

    def test_rust_crate_example(self):
        wf = load_workflow(EXAMPLES / "rust_crate.yml")
        names = [j.name for j in wf.jobs]
        miri = [n for n in names if n.startswith("miri[")]

        assert names[:3] == ["build", "formatting", "test"]
        assert names[-1] == "typos"
        assert len(miri) == 4
        assert "miri[MIRIFLAGS=-Zmiri-tree-borrows]" in miri
        assert wf.job("miri[MIRIFLAGS=]").env["MIRIFLAGS"] == ""
        # every variant shares the same steps
        steps = [j.steps for j in wf.jobs if j.name in miri]
        assert all(s == steps[0] for s in steps)

    def test_variant_env_overrides_job_env(self):
        data = {
            "triggers": [{"event": "push", "branches": ["master"]}],
            "jobs": [{
                "name": "t",
                "environment": {"MODE": "base", "KEEP": "1"},
                "matrix": {"MODE": ["fast", "slow"]},
                "steps": [{"kind": "checkout"}],
            }],
        }
        jobs = parse_workflow(data).jobs
        assert [dict(j.env) for j in jobs] == [
            {"MODE": "fast", "KEEP": "1"},
            {"MODE": "slow", "KEEP": "1"},
        ]


# ===================================================================
# Rejected definitions
# ===================================================================

class TestInvalidDefinitions:

    @staticmethod
    def base(**overrides):
        data = {
            "name": "w",
            "triggers": [{"event": "push", "branches": ["master"]}],
            "jobs": [{"name": "a", "steps": [{"kind": "checkout"}]}],
        }
        data.update(overrides)
        return data

    def test_duplicate_job_names(self):
        jobs = [{"name": "a", "steps": [{"kind": "checkout"}]}] * 2
        with pytest.raises(ConfigurationError, match="Duplicate job names"):
            parse_workflow(self.base(jobs=jobs))

    def test_matrix_collision_is_a_duplicate(self):
        jobs = [
            {"name": "t[K=1]", "steps": [{"kind": "checkout"}]},
            {"name": "t", "matrix": {"K": [1]}, "steps": [{"kind": "checkout"}]},
        ]
        with pytest.raises(ConfigurationError, match="Duplicate"):
            parse_workflow(self.base(jobs=jobs))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"jobs": [{"name": "a", "steps": []}]},
            {"jobs": []},
            {"triggers": []},
            {"triggers": [{"event": "push", "branches": []}]},
            {"triggers": [{"event": "tag", "branches": ["v*"]}]},
            {"jobs": [{"name": "a", "steps": [{"kind": "docker", "image": "x"}]}]},
            {"jobs": [{"name": "a", "steps": [{"kind": "run_command", "command": ""}]}]},
            {"jobs": [{"name": "a", "steps": [{"kind": "run_command", "command": "x", "timeout": 0}]}]},
            {"jobs": [{"name": "a", "needs": ["b"], "steps": [{"kind": "checkout"}]}]},
            {"jobs": [{"name": "a", "matrix": {"K": []}, "steps": [{"kind": "checkout"}]}]},
            {"unexpected": 1},
        ],
        ids=[
            "job-without-steps", "no-jobs", "no-triggers", "trigger-without-branches",
            "unknown-event", "unknown-step-kind", "empty-command", "zero-timeout",
            "unknown-job-key", "empty-matrix", "unknown-top-level-key",
        ],
    )
    def test_rejected(self, overrides):
        with pytest.raises(ConfigurationError) as exc:
            parse_workflow(self.base(**overrides), source="w.yml")
        assert exc.value.source == "w.yml"

    def test_validation_details_name_the_location(self):
        data = self.base(jobs=[{"name": "a", "steps": [{"kind": "run_command"}]}])
        with pytest.raises(ConfigurationError) as exc:
            parse_workflow(data)
        assert any("jobs.0.steps.0" in d for d in exc.value.details)

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError, match="mapping"):
            parse_workflow(["jobs"])

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yml"
        path.write_text("jobs: [unclosed\n")
        with pytest.raises(ConfigurationError, match="invalid YAML"):
            load_workflow(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_workflow(tmp_path / "nope.yml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "workflow.json"
        path.write_text("{}")
        with pytest.raises(ConfigurationError, match=".yml, .yaml or .py"):
            load_workflow(path)


# ===================================================================
# GitHub Actions translation
# ===================================================================

class TestActionsImport:

    def test_example_workflow(self):
        wf = load_workflow(EXAMPLES / "actions_tests.yml")

        assert wf.name == "Tests"
        assert wf.env["CARGO_TERM_COLOR"] == "always"
        assert {t.event for t in wf.triggers} == {EventKind.PUSH, EventKind.PULL_REQUEST}
        assert [j.name for j in wf.jobs] == ["test", "typos"]

        typos = wf.job("typos")
        assert isinstance(typos.steps[0], Checkout)
        assert isinstance(typos.steps[1], InstallTool)
        assert type(typos.steps[2]) is RunCommand
        assert typos.steps[2].command == "typos"

    def test_missing_branch_filter_matches_every_branch(self, tmp_path):
        path = write(tmp_path / "ci.yml", """
            on: [push]
            jobs:
              a:
                steps:
                  - run: make
        """)
        wf = load_workflow(path)
        assert wf.matches(Event(kind=EventKind.PUSH, branch="anything/at/all"))
        assert not wf.matches(Event(kind=EventKind.PULL_REQUEST, branch="master"))

    def test_step_options(self, tmp_path):
        path = write(tmp_path / "ci.yml", """
            on:
              push:
                branches: [main]
            jobs:
              a:
                env: {JOB: "1"}
                steps:
                  - name: Build
                    run: make
                    env: {STEP: "2"}
                    working-directory: sub
                    timeout-minutes: 2
        """)
        a = load_workflow(path).job("a")
        step = a.steps[0]
        assert a.env["JOB"] == "1"
        assert (step.name, step.command, step.cwd, step.timeout) == ("Build", "make", "sub", 120.0)
        assert step.env["STEP"] == "2"

    def test_strategy_matrix(self, tmp_path):
        path = write(tmp_path / "ci.yml", """
            on: [push]
            jobs:
              miri:
                runs-on: ubuntu-latest
                strategy:
                  matrix:
                    MIRIFLAGS: ["-Zmiri-strict-provenance", "-Zmiri-tree-borrows"]
                steps:
                  - uses: actions/checkout@v4
                    with: {fetch-depth: 0}
                  - run: cargo miri test ${{ matrix.MIRIFLAGS }}
        """)
        wf = load_workflow(path)
        assert [j.name for j in wf.jobs] == [
            "miri[MIRIFLAGS=-Zmiri-strict-provenance]",
            "miri[MIRIFLAGS=-Zmiri-tree-borrows]",
        ]
        assert wf.jobs[1].env["MIRIFLAGS"] == "-Zmiri-tree-borrows"
        assert wf.jobs[0].steps[1].command == "cargo miri test ${MIRIFLAGS}"

    def test_unhonoured_keys_are_not_dropped(self):
        data = {
            "on": {"push": {"branches-ignore": ["master"]}},
            "jobs": {"t": {"steps": [{"run": "echo hi", "if": "false"}]}},
        }
        with pytest.raises(ConfigurationError, match="branches-ignore"):
            parse_workflow(data)
        data["on"] = {"push": {"branches": ["master"]}}
        with pytest.raises(ConfigurationError, match="'if'"):
            parse_workflow(data)

    @pytest.mark.parametrize(
        "body, message",
        [
            ("on: [push]\njobs:\n  a:\n    needs: [b]\n    steps: [{run: x}]\n", "needs"),
            ("on: [push]\njobs:\n  a:\n    steps: [{uses: actions/cache@v3}]\n", "unsupported action"),
            ("on: [push]\njobs:\n  a:\n    steps: [{name: nothing}]\n", "run"),
            ("on: [workflow_dispatch]\njobs:\n  a:\n    steps: [{run: x}]\n", "push or pull_request"),
            ("on: {push: {branches-ignore: [master]}}\njobs:\n  a:\n    steps: [{run: x}]\n", "branches-ignore"),
            ("on: [push]\njobs:\n  a:\n    continue-on-error: true\n    steps: [{run: x}]\n", "continue-on-error"),
            ("on: [push]\njobs:\n  a:\n    steps: [{run: x, if: 'false'}]\n", "'if'"),
            ("on: [push]\njobs:\n  a:\n    steps: [{run: x, shell: bash}]\n", "shell"),
            ("on: [push]\njobs:\n  a:\n    steps: [{run: x, with: {a: 1}}]\n", "with"),
            ("on: [push]\njobs:\n  a:\n    steps: [{uses: actions/checkout@v4, with: {ref: dev}}]\n", "ref"),
            ("on: [push]\ndefaults: {run: {shell: bash}}\njobs:\n  a:\n    steps: [{run: x}]\n", "defaults"),
            ("on: [push]\njobs:\n  a:\n    strategy: {matrix: {include: [{a: 1}]}}\n    steps: [{run: x}]\n", "include"),
            ("on: [push]\njobs:\n  a:\n    strategy: {fail-fast: false, matrix: {a: [1]}}\n    steps: [{run: x}]\n", "fail-fast"),
            ("on: [push]\njobs:\n  a:\n    strategy: {matrix: {rust-version: [1]}}\n    steps: [{run: x}]\n", "environment variable"),
            ("on: [push]\njobs:\n  a:\n    steps: [{run: 'echo ${{ matrix.os }}'}]\n", "unknown matrix key"),
            ("on: [push]\njobs:\n  a:\n    steps: [{run: 'echo ${{ secrets.TOKEN }}'}]\n", "expressions"),
            ("on: [push]\njobs:\n  a:\n    steps: [{run: x, env: {T: '${{ github.sha }}'}}]\n", "expressions"),
        ],
        ids=[
            "needs", "unknown-action", "no-run", "no-supported-trigger", "branches-ignore",
            "continue-on-error", "step-if", "shell", "with-on-run-step", "checkout-ref",
            "unknown-top-level-key", "matrix-include", "strategy-fail-fast", "matrix-key-not-env-name",
            "unknown-matrix-key", "other-expression", "expression-in-env",
        ],
    )
    def test_rejected(self, tmp_path, body, message):
        path = tmp_path / "ci.yml"
        path.write_text(body)
        with pytest.raises(ConfigurationError, match=message):
            load_workflow(path)


# ===================================================================
# Python workflow files and discovery
# ===================================================================

class TestPythonWorkflows:

    def test_workflow_function(self, tmp_path):
        path = write(tmp_path / "ci_workflow.py", """
            from gateci import checkout, job, on_push, sh, wf

            def workflow():
                return wf(
                    job("build", checkout(), sh("Build", "make")),
                    name="py",
                    triggers=[on_push("master")],
                )
        """)
        wf = load_workflow(path)
        assert wf.name == "py"
        assert [j.name for j in wf.jobs] == ["build"]

    def test_workflow_constant(self, tmp_path):
        path = write(tmp_path / "const_workflow.py", """
            from gateci import job, on_push, sh, wf

            WORKFLOW = wf(job("a", sh("a", "true")), name="const", triggers=[on_push("*")])
        """)
        assert load_workflow(path).name == "const"

    def test_file_without_workflow(self, tmp_path):
        path = write(tmp_path / "empty_workflow.py", "VALUE = 1\n")
        with pytest.raises(ConfigurationError, match="must return/define a Workflow") as exc:
            load_workflow(path)
        assert exc.value.source == str(path.resolve())

    def test_invalid_dsl_definition_reports_file(self, tmp_path):
        path = write(tmp_path / "bad_workflow.py", """
            from gateci import job, sh, wf

            WORKFLOW = wf(job("a", sh("a", "true")), name="no-triggers")
        """)
        with pytest.raises(ConfigurationError, match="no triggers") as exc:
            load_workflow(path)
        assert exc.value.source == str(path.resolve())


class TestDiscovery:

    def test_find_workflow_files(self, tmp_path):
        write(tmp_path / "gateci.yml", BUILD_AND_LINT)
        write(tmp_path / "release_workflow.py", "WORKFLOW = None\n")
        write(tmp_path / ".gateci" / "workflows" / "nightly.yaml", BUILD_AND_LINT)
        write(tmp_path / "unrelated.yml", "a: 1\n")

        names = [p.name for p in find_workflow_files(tmp_path)]
        assert names == ["gateci.yml", "release_workflow.py", "nightly.yaml"]

    def test_load_workflows_keeps_order(self, tmp_path):
        first = write(tmp_path / "a.yml", BUILD_AND_LINT)
        second = load_workflow(EXAMPLES / "actions_tests.yml")
        loaded = load_workflows([first, EXAMPLES / "actions_tests.yml"])
        assert [w.name for w in loaded] == ["build", second.name]
