"""
Run models — what a formula run produced.

``StepOutcome`` records one executed command, ``InstalledArtifact`` one
file placed in the install prefix, and ``RunResult`` the single terminal
outcome of an install or test run.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Stage(StrEnum):
    """Pipeline stages, in execution order."""

    DEPENDENCIES = "dependencies"
    WORKSPACE = "workspace"
    SOURCE = "source"
    STEPS = "steps"
    INSTALL = "install"
    VERIFY = "verify"


class RunStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepOutcome(BaseModel):
    """One executed install or test command."""

    index: int
    command: str
    exit_code: int
    output: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class InstalledArtifact(BaseModel):
    """A file the installer placed — the durable output of a run."""

    name: str                       # installed name, e.g. "example1"
    source: str                     # path inside the workspace at install time
    destination: str                # file inside the formula's keg
    link: str | None = None         # shared <prefix>/bin symlink, if any


class RunResult(BaseModel):
    """Terminal outcome of one run.

    Produced exactly once per run. ``installed`` and ``verified`` are
    reported separately: a failing test never undoes an install.
    """

    run_id: str = ""
    formula: str
    action: Literal["install", "test"] = "install"
    status: RunStatus = RunStatus.SUCCEEDED

    # Failure detail
    stage: Stage | None = None
    error_kind: str | None = None
    error: str | None = None
    step_index: int | None = None
    command: str | None = None
    exit_code: int | None = None
    output: str = ""
    exit_status: int = 0            # process exit code for the CLI

    # Outcomes
    installed: bool = False
    verified: bool | None = None
    artifacts: list[InstalledArtifact] = Field(default_factory=list)
    steps: list[StepOutcome] = Field(default_factory=list)
    tests: list[StepOutcome] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    workspace: str | None = None    # set only when the workspace was kept

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status != RunStatus.FAILED

    @property
    def failed(self) -> bool:
        return self.status == RunStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
