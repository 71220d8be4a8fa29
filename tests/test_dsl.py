"""Tests for the Python workflow helpers."""

import pytest

from gateci.dsl import checkout, install, job, matrix, on_pull_request, on_push, sh, wf
from gateci.errors import ConfigurationError
from gateci.model import Checkout, Event, EventKind, InstallTool, RunCommand


class TestSteps:

    def test_sh(self):
        step = sh("Build", "cargo build", env={"N": 1}, cwd="crate", timeout=30)
        assert type(step) is RunCommand
        assert step.display_name == "Build"
        assert dict(step.env) == {"N": "1"}
        assert (step.cwd, step.timeout) == ("crate", 30)

    def test_install_is_a_command_with_its_own_kind(self):
        step = install("Install Typo", "cargo install typos-cli")
        assert isinstance(step, InstallTool)
        assert step.kind == "install_tool"

    def test_checkout(self):
        assert checkout() == Checkout(name="Checkout")

    def test_package_exports_helpers_after_full_import(self):
        import gateci
        import gateci.runner  # noqa: F401  (loads the working-copy module)

        assert gateci.checkout is checkout
        assert gateci.checkout() == Checkout(name="Checkout")


class TestJobs:

    def test_positional_and_list_steps(self):
        j = job("x", sh("b", "b"), steps_list=[sh("a", "a")])
        assert [s.name for s in j.steps] == ["a", "b"]

    def test_job_without_steps(self):
        with pytest.raises(ConfigurationError, match="at least one step"):
            job("empty")

    def test_matrix_variants(self):
        base = job("miri", checkout(), env={"RUST_BACKTRACE": "1"})
        variants = matrix("MIRIFLAGS", ["", "-Zmiri-tree-borrows"]).variants(base)
        assert [v.name for v in variants] == ["miri[MIRIFLAGS=]", "miri[MIRIFLAGS=-Zmiri-tree-borrows]"]
        assert dict(variants[1].env) == {"RUST_BACKTRACE": "1", "MIRIFLAGS": "-Zmiri-tree-borrows"}
        assert variants[0].steps == base.steps

    def test_matrix_jobs_builder(self):
        jobs = matrix("V", [1, 2]).jobs(lambda v: job(f"t{v}", sh("t", f"echo {v}")))
        assert [j.name for j in jobs] == ["t1", "t2"]


class TestWorkflow:

    def test_lists_are_flattened(self):
        variants = matrix("K", ["a", "b"]).variants(job("t", checkout()))
        w = wf(job("build", checkout()), variants, name="ci", triggers=[on_push("master")])
        assert [j.name for j in w.jobs] == ["build", "t[K=a]", "t[K=b]"]

    def test_triggers(self):
        w = wf(job("a", checkout()), triggers=[on_push("master"), on_pull_request("main", "release/*")])
        assert w.matches(Event(kind=EventKind.PULL_REQUEST, branch="release/2"))
        assert not w.matches(Event(kind=EventKind.PUSH, branch="main"))

    def test_duplicate_jobs_rejected(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            wf(job("a", checkout()), job("a", checkout()), triggers=[on_push("master")])

    def test_no_triggers_rejected(self):
        with pytest.raises(ConfigurationError, match="no triggers"):
            wf(job("a", checkout()))

    def test_definition_is_frozen(self):
        w = wf(job("a", checkout()), triggers=[on_push("master")], env={"A": "1"})
        with pytest.raises(TypeError):
            w.env["A"] = "2"
        with pytest.raises(AttributeError):
            w.jobs.append(job("b", checkout()))
