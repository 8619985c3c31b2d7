"""
Formula pipeline — the central orchestration of a formula run.

An install run passes through the stages strictly in order, each one
either handing the workspace on or aborting the run:

    dependencies → workspace → source → steps → install  (→ verify)

A test run executes only the verify stage against an installed formula.

Stage failures are raised as FormulaError subclasses and caught exactly
once, here, where they become the run's single RunResult. Every run is
appended to the run ledger.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import UTC, datetime

from formulary.adapters.base import CommandRunner
from formulary.adapters.shell.command import ShellCommandRunner
from formulary.core.config.settings import Settings
from formulary.core.engine.errors import (
    INTERRUPTED_EXIT_CODE,
    ArtifactInstallFailed,
    FormulaError,
    MissingDependency,
    StepFailed,
    VerificationFailed,
)
from formulary.core.engine.gate import check_dependencies
from formulary.core.engine.installer import install_artifacts
from formulary.core.engine.stager import stage_source
from formulary.core.engine.steps import run_steps
from formulary.core.engine.verifier import verify
from formulary.core.engine.workspace import allocate_workspace
from formulary.core.models.formula import Formula
from formulary.core.models.receipt import InstallReceipt
from formulary.core.models.run import RunResult, RunStatus, StepOutcome
from formulary.core.persistence.audit import RunLedger
from formulary.core.persistence.install_state import InstallState

logger = logging.getLogger(__name__)


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


class FormulaRunner:
    """Run formulas against one install prefix.

    Args:
        settings: Engine settings.
        state: Install state collaborator (default: from ``settings.prefix``).
        runner: Command runner (default: a real shell runner).
        ledger: Run ledger (default: ``settings.ledger_path``).
    """

    def __init__(
        self,
        settings: Settings,
        state: InstallState | None = None,
        runner: CommandRunner | None = None,
        ledger: RunLedger | None = None,
    ):
        self.settings = settings
        self.state = state or InstallState(settings.prefix, host_tools=settings.host_tools)
        self.runner = runner or ShellCommandRunner(default_timeout=settings.step_timeout)
        self.ledger = ledger or RunLedger(settings.ledger_path)

    # ── install ─────────────────────────────────────────────────

    def install(
        self,
        formula: Formula,
        head: bool = False,
        keep: bool = False,
        test: bool = False,
        skip_installed: bool = False,
    ) -> RunResult:
        """Build and install ``formula``; optionally verify it.

        Args:
            formula: The formula to install.
            head: Build the latest unpinned source.
            keep: Retain the workspace for debugging.
            test: Run the verify stage after a successful install.
            skip_installed: Return a skipped result when the same version
                and revision is already installed.
        """
        result = RunResult(run_id=generate_run_id(), formula=formula.name, action="install")
        start = time.monotonic()
        keep = keep or self.settings.keep_tmp

        try:
            if skip_installed and self._already_installed(formula, head, result):
                return self._finish(result, start)

            check_dependencies(formula, self.state)

            with allocate_workspace(formula, self.settings, keep=keep) as workspace:
                if workspace.keep:
                    result.workspace = str(workspace.path)

                result.warnings.extend(
                    stage_source(
                        formula,
                        workspace,
                        self.runner,
                        head=head,
                        fetch_timeout=self.settings.fetch_timeout,
                    )
                )
                result.steps = run_steps(
                    formula,
                    workspace,
                    self.runner,
                    prefix=str(self.state.prefix),
                    timeout=self.settings.step_timeout,
                )
                result.artifacts = install_artifacts(formula, workspace, self.state)
                self._write_receipt(
                    InstallReceipt.for_install(
                        formula, result.artifacts, head=head, run_id=result.run_id
                    )
                )
                result.installed = True
                logger.info(
                    "%s: installed %d artifacts", formula.name, len(result.artifacts)
                )

            if test:
                result.tests = self._verify(formula)
                result.verified = True

        except FormulaError as e:
            self._record_failure(result, e)
        except KeyboardInterrupt:
            result.status = RunStatus.FAILED
            result.error = "Interrupted"
            result.exit_status = INTERRUPTED_EXIT_CODE
            self._finish(result, start)
            raise

        return self._finish(result, start)

    # ── test ────────────────────────────────────────────────────

    def test(self, formula: Formula | str) -> RunResult:
        """Run the verify stage alone against an installed formula.

        Args:
            formula: A Formula, or the name of an installed formula whose
                receipt snapshot supplies the test steps.
        """
        name = formula if isinstance(formula, str) else formula.name
        result = RunResult(run_id=generate_run_id(), formula=name, action="test")
        start = time.monotonic()

        try:
            if isinstance(formula, str):
                receipt = self.state.read_receipt(name)
                if receipt is None:
                    raise MissingDependency([name], formula=name)
                formula = receipt.formula

            result.installed = self.state.read_receipt(name) is not None
            result.tests = self._verify(formula)
            result.verified = True
        except FormulaError as e:
            self._record_failure(result, e)
        except KeyboardInterrupt:
            result.status = RunStatus.FAILED
            result.error = "Interrupted"
            result.exit_status = INTERRUPTED_EXIT_CODE
            self._finish(result, start)
            raise

        return self._finish(result, start)

    # ── Helpers ─────────────────────────────────────────────────

    def _verify(self, formula: Formula) -> list[StepOutcome]:
        tmp_dir = str(self.settings.tmp_dir) if self.settings.tmp_dir else None
        return verify(
            formula,
            self.state,
            self.runner,
            timeout=self.settings.step_timeout,
            tmp_dir=tmp_dir,
        )

    def _write_receipt(self, receipt: InstallReceipt) -> None:
        try:
            self.state.write_receipt(receipt)
        except OSError as e:
            path = self.state.receipt_path(receipt.name)
            raise ArtifactInstallFailed(str(path), str(e), formula=receipt.name) from e

    def _already_installed(self, formula: Formula, head: bool, result: RunResult) -> bool:
        receipt = self.state.read_receipt(formula.name)
        if receipt is None or head or receipt.head:
            return False
        if (receipt.version, receipt.revision) != (formula.version, formula.revision):
            return False

        logger.info("%s %s is already installed", formula.name, formula.display_version)
        result.status = RunStatus.SKIPPED
        result.installed = True
        result.artifacts = list(receipt.artifacts)
        return True

    def _record_failure(self, result: RunResult, error: FormulaError) -> None:
        logger.error("%s: %s failed: %s", result.formula, error.stage, error)

        result.status = RunStatus.FAILED
        result.stage = error.stage
        result.error_kind = error.kind
        result.error = str(error)
        result.output = error.output
        result.exit_status = error.exit_code

        if isinstance(error, (StepFailed, VerificationFailed)):
            result.step_index = error.index
            result.command = error.command
            result.exit_code = error.command_exit_code
        if isinstance(error, StepFailed):
            result.steps = error.steps
        elif isinstance(error, VerificationFailed):
            result.tests = error.steps
            result.verified = False

    def _finish(self, result: RunResult, start: float) -> RunResult:
        result.ended_at = datetime.now(UTC).isoformat()
        result.duration_ms = int((time.monotonic() - start) * 1000)
        self.ledger.record(result)
        return result
