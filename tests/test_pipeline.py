"""
Tests for the formula pipeline — end-to-end install and test runs.

Builds are simulated by MockCommandRunner side effects (a clone that
populates the stage dir, a ``make build`` that writes the binary), so
every stage runs for real against an isolated prefix.
"""

import threading
from pathlib import Path

import pytest

from formulary.adapters.mock import MockCommandRunner
from formulary.adapters.shell.command import ShellCommandRunner
from formulary.core.engine.errors import (
    ArtifactConflict,
    ArtifactInstallFailed,
    ArtifactMissing,
    FormulaError,
    MissingDependency,
    SourceUnavailable,
    StepFailed,
    VerificationFailed,
    WorkspaceAllocationFailed,
)
from formulary.core.models.run import RunStatus, Stage

from conftest import PresetInstallState, fake_clone


def _workspaces_left(settings) -> list:
    if not settings.tmp_dir.exists():
        return []
    return list(settings.tmp_dir.iterdir())


class TestScenarios:
    """The reference runs of the example formula."""

    def test_a_full_success(self, make_formula, make_runner, build_runner, settings, state):
        """Deps present, sentinel version, make build, artifact, ``true`` test."""
        result = make_runner(build_runner).install(make_formula(), test=True)

        assert result.status == RunStatus.SUCCEEDED
        assert result.exit_status == 0
        assert result.installed is True
        assert result.verified is True
        assert [a.name for a in result.artifacts] == ["example1"]
        assert [s.command for s in result.steps] == ["make build"]
        assert [t.command for t in result.tests] == ["true"]
        assert any("default branch" in w for w in result.warnings)

        assert (state.bin_dir / "example1").is_symlink()
        assert state.read_receipt("example1") is not None
        assert _workspaces_left(settings) == []

    def test_b_step_failure(self, make_formula, make_runner, settings, state):
        runner = MockCommandRunner()
        runner.on("git clone", side_effect=fake_clone)
        runner.fail("make build", exit_code=1, stderr="make: *** [build] Error 1")

        result = make_runner(runner).install(make_formula(), test=True)

        assert result.status == RunStatus.FAILED
        assert result.stage == Stage.STEPS
        assert result.error_kind == "StepFailed"
        assert result.step_index == 0
        assert result.command == "make build"
        assert result.exit_code == 1
        assert result.exit_status == 5
        assert "Error 1" in result.output
        assert result.installed is False
        assert result.verified is None
        assert result.artifacts == []
        assert runner.commands[-1] == "make build"
        assert state.read_receipt("example1") is None
        assert _workspaces_left(settings) == []

    def test_c_missing_dependency(self, make_formula, make_runner, build_runner, settings):
        only_make = PresetInstallState(settings.prefix, {"make"})
        result = make_runner(build_runner, install_state=only_make).install(make_formula())

        assert result.status == RunStatus.FAILED
        assert result.stage == Stage.DEPENDENCIES
        assert result.error_kind == "MissingDependency"
        assert "go" in result.error
        assert result.exit_status == 2
        assert build_runner.call_count == 0
        assert not settings.tmp_dir.exists()


class TestInstall:
    """Install behaviors beyond the reference scenarios."""

    def test_reinstall_is_idempotent(self, make_formula, make_runner, build_runner, state):
        runner = make_runner(build_runner)
        first = runner.install(make_formula())
        second = runner.install(make_formula())

        assert first.ok and second.ok
        assert first.artifacts == second.artifacts
        assert sorted(p.name for p in state.bin_dir.iterdir()) == ["example1"]
        keg = state.install_prefix_for("example1")
        assert sorted(p.name for p in keg.rglob("*") if p.is_file()) == [
            "INSTALL_RECEIPT.json",
            "example1",
        ]

    def test_skip_installed(self, make_formula, make_runner, build_runner):
        runner = make_runner(build_runner)
        runner.install(make_formula())
        calls = build_runner.call_count

        result = runner.install(make_formula(), skip_installed=True)
        assert result.status == RunStatus.SKIPPED
        assert result.ok
        assert result.exit_status == 0
        assert build_runner.call_count == calls

    def test_skip_installed_rebuilds_new_revision(self, make_formula, make_runner, build_runner):
        runner = make_runner(build_runner)
        runner.install(make_formula(revision=1))
        result = runner.install(make_formula(revision=2), skip_installed=True)
        assert result.status == RunStatus.SUCCEEDED

    def test_keep_workspace(self, make_formula, make_runner, build_runner):
        result = make_runner(build_runner).install(make_formula(), keep=True)
        assert result.workspace is not None
        assert Path(result.workspace, "build").is_dir()

    def test_workspace_removed_after_failure(self, make_formula, make_runner, settings):
        runner = MockCommandRunner()
        runner.on("git clone", side_effect=fake_clone)
        # make build "succeeds" without producing the binary
        result = make_runner(runner).install(make_formula())

        assert result.error_kind == "ArtifactMissing"
        assert result.stage == Stage.INSTALL
        assert result.exit_status == 6
        assert result.workspace is None
        assert _workspaces_left(settings) == []

    def test_source_unavailable(self, make_formula, make_runner, settings):
        runner = MockCommandRunner().fail("git clone", exit_code=128, stderr="not found")
        result = make_runner(runner).install(make_formula())
        assert result.stage == Stage.SOURCE
        assert result.exit_status == 4
        assert "not found" in result.output

    def test_filesystem_error_becomes_result(self, make_formula, make_runner, build_runner, state, ledger):
        state.prefix.mkdir(parents=True)
        state.bin_dir.write_text("not a directory")

        result = make_runner(build_runner).install(make_formula())

        assert result.failed
        assert result.stage == Stage.INSTALL
        assert result.error_kind == "ArtifactInstallFailed"
        assert result.exit_status == 9
        assert result.installed is False
        assert state.read_receipt("example1") is None
        assert ledger.read_all()[-1].exit_status == 9

    def test_receipt_write_failure_becomes_result(self, make_formula, make_runner, build_runner, state):
        state.receipt_path("example1").mkdir(parents=True)

        result = make_runner(build_runner).install(make_formula())

        assert result.failed
        assert result.error_kind == "ArtifactInstallFailed"
        assert result.exit_status == 9
        assert "INSTALL_RECEIPT.json" in result.error

    def test_test_failure_keeps_install(self, make_formula, make_runner, build_runner, state):
        build_runner.fail("example1 --version", exit_code=1)
        formula = make_formula(test_steps=["example1 --version"])
        result = make_runner(build_runner).install(formula, test=True)

        assert result.status == RunStatus.FAILED
        assert result.stage == Stage.VERIFY
        assert result.installed is True
        assert result.verified is False
        assert result.exit_status == 8
        assert state.read_receipt("example1") is not None

    def test_head_mode(self, make_formula, make_runner, build_runner, state):
        formula = make_formula(version="v1.0.0")
        result = make_runner(build_runner).install(formula, head=True)
        assert result.ok
        assert not any(c.startswith("git checkout") for c in build_runner.commands)
        assert state.read_receipt("example1").head is True

    def test_interrupt_cleans_up(self, make_formula, make_runner, settings, ledger):
        def _interrupt(command, cwd, env):
            raise KeyboardInterrupt

        runner = MockCommandRunner()
        runner.on("git clone", side_effect=fake_clone)
        runner.on("make build", side_effect=_interrupt)

        with pytest.raises(KeyboardInterrupt):
            make_runner(runner).install(make_formula())

        assert _workspaces_left(settings) == []
        entry = ledger.read_all()[-1]
        assert entry.status == "failed"

    def test_ledger_records_each_run(self, make_formula, make_runner, build_runner, ledger):
        runner = make_runner(build_runner)
        runner.install(make_formula())
        runner.test("example1")

        entries = ledger.read_all()
        assert [e.action for e in entries] == ["install", "test"]
        assert entries[0].artifacts == ["example1"]
        assert entries[1].verified is True

    def test_concurrent_formulas(self, make_formula, make_runner, build_runner, state):
        runner = make_runner(build_runner)
        results = {}

        def _run(name):
            formula = make_formula(name=name, artifacts={"bin/example1": f"{name}-tool"})
            results[name] = runner.install(formula)

        threads = [threading.Thread(target=_run, args=(n,)) for n in ("alpha", "beta", "gamma")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.ok for r in results.values())
        assert sorted(p.name for p in state.bin_dir.iterdir()) == [
            "alpha-tool",
            "beta-tool",
            "gamma-tool",
        ]


class TestTestRun:
    """FormulaRunner.test() — the verify stage alone."""

    def test_by_name_uses_receipt(self, make_formula, make_runner, build_runner):
        runner = make_runner(build_runner)
        runner.install(make_formula(test_steps=["example1 --help"]))
        build_runner.reset()

        result = runner.test("example1")
        assert result.ok
        assert result.action == "test"
        assert result.installed is True
        assert build_runner.commands == ["example1 --help"]

    def test_not_installed(self, make_runner, mock_runner):
        result = make_runner(mock_runner).test("example1")
        assert result.failed
        assert result.error_kind == "MissingDependency"
        assert result.installed is False
        assert result.exit_status == 2

    def test_failure(self, make_formula, make_runner, build_runner):
        runner = make_runner(build_runner)
        runner.install(make_formula())
        build_runner.fail("true", exit_code=1)

        result = runner.test(make_formula())
        assert result.failed
        assert result.verified is False
        assert result.step_index == 0
        assert result.exit_status == 8

    def test_scratch_dir_unavailable(self, make_formula, make_runner, build_runner, settings):
        runner = make_runner(build_runner)
        runner.install(make_formula())
        settings.tmp_dir.rmdir()
        settings.tmp_dir.write_text("not a directory")

        result = runner.test("example1")
        assert result.failed
        assert result.error_kind == "WorkspaceAllocationFailed"
        assert result.exit_status == 3


class TestErrorTaxonomy:
    """Stage and exit code carried by each error kind."""

    def test_base_error_has_no_stage(self):
        assert FormulaError("boom").stage is None

    def test_every_kind_names_its_stage_and_code(self):
        kinds = [
            MissingDependency,
            WorkspaceAllocationFailed,
            SourceUnavailable,
            StepFailed,
            ArtifactMissing,
            ArtifactConflict,
            ArtifactInstallFailed,
            VerificationFailed,
        ]
        assert all(kind.stage is not None for kind in kinds)
        assert [kind.exit_code for kind in kinds] == [2, 3, 4, 5, 6, 7, 9, 8]


@pytest.mark.integration
class TestRealShell:
    """Full runs through ShellCommandRunner with a local source tree."""

    def test_install_and_test(self, local_formula, settings, state, ledger):
        from formulary.core.engine.pipeline import FormulaRunner

        runner = FormulaRunner(settings, state=state, runner=ShellCommandRunner(), ledger=ledger)
        result = runner.install(local_formula(), test=True)

        assert result.ok, result.output
        assert result.verified is True
        assert (state.bin_dir / "hello").is_symlink()
        assert _workspaces_left(settings) == []

    def test_failing_step(self, local_formula, settings, state, ledger):
        from formulary.core.engine.pipeline import FormulaRunner

        formula = local_formula(install_steps=["echo building", "exit 3", "touch never"])
        runner = FormulaRunner(settings, state=state, runner=ShellCommandRunner(), ledger=ledger)
        result = runner.install(formula)

        assert result.step_index == 1
        assert result.exit_code == 3
        assert [s.output for s in result.steps] == ["building", ""]
