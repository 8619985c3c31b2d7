"""
Engine errors — the terminal failure taxonomy of a formula run.

Every stage raises at most one of these. The pipeline catches them at
its boundary and turns them into the run's single ``RunResult``; nothing
here is retried automatically.

Each class carries the stage it belongs to and the CLI exit code that
distinguishes it.
"""

from __future__ import annotations

from formulary.core.models.run import Stage, StepOutcome


class FormulaError(Exception):
    """Base class for all run-terminating errors."""

    stage: Stage | None = None
    exit_code: int = 1

    def __init__(self, message: str, formula: str = "", output: str = ""):
        super().__init__(message)
        self.formula = formula
        self.output = output

    @property
    def kind(self) -> str:
        return self.__class__.__name__


class MissingDependency(FormulaError):
    """One or more declared dependencies are not installed."""

    stage = Stage.DEPENDENCIES
    exit_code = 2

    def __init__(self, names: list[str], formula: str = ""):
        self.names = list(names)
        super().__init__(
            f"Missing dependencies: {', '.join(self.names)}",
            formula=formula,
        )


class WorkspaceAllocationFailed(FormulaError):
    """The isolated build workspace could not be created."""

    stage = Stage.WORKSPACE
    exit_code = 3


class SourceUnavailable(FormulaError):
    """The source could not be realized into the build root."""

    stage = Stage.SOURCE
    exit_code = 4

    def __init__(self, locator: str, cause: str, formula: str = "", output: str = ""):
        self.locator = locator
        self.cause = cause
        super().__init__(
            f"Source unavailable: {locator} ({cause})",
            formula=formula,
            output=output,
        )


class _CommandFailure(FormulaError):
    """A declared command exited non-zero."""

    label = "Step"

    def __init__(
        self,
        index: int,
        command: str,
        exit_code: int,
        output: str = "",
        formula: str = "",
        steps: list[StepOutcome] | None = None,
    ):
        self.index = index
        self.steps = list(steps or [])
        self.command = command
        self.command_exit_code = exit_code
        super().__init__(
            f"{self.label} {index} failed with exit code {exit_code}: {command}",
            formula=formula,
            output=output,
        )


class StepFailed(_CommandFailure):
    """An install step exited non-zero; later steps did not run."""

    stage = Stage.STEPS
    exit_code = 5


class ArtifactMissing(FormulaError):
    """A declared artifact was not produced by the build."""

    stage = Stage.INSTALL
    exit_code = 6

    def __init__(self, path: str, formula: str = ""):
        self.path = path
        super().__init__(f"Declared artifact not found in build root: {path}", formula=formula)


class ArtifactConflict(FormulaError):
    """An install destination belongs to something else."""

    stage = Stage.INSTALL
    exit_code = 7

    def __init__(self, path: str, owner: str | None = None, formula: str = ""):
        self.path = path
        self.owner = owner
        owned_by = f"formula '{owner}'" if owner else "an unmanaged file"
        super().__init__(
            f"Refusing to overwrite {path}: it belongs to {owned_by}",
            formula=formula,
        )


class ArtifactInstallFailed(FormulaError):
    """The filesystem refused an install write (keg, link or receipt)."""

    stage = Stage.INSTALL
    exit_code = 9

    def __init__(self, path: str, cause: str, formula: str = ""):
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot install {path}: {cause}", formula=formula)


class VerificationFailed(_CommandFailure):
    """A post-install test command exited non-zero."""

    stage = Stage.VERIFY
    exit_code = 8
    label = "Test step"


# Exit code used when a run is interrupted (SIGINT convention)
INTERRUPTED_EXIT_CODE = 130
