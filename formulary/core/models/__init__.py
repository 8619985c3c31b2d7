"""
Domain models — Pydantic types for the formula engine.

All models are re-exported here for convenient access:

    from formulary.core.models import Formula, RunResult, InstallReceipt
"""

from formulary.core.models.formula import Formula, SourceLocator, SourceStrategy
from formulary.core.models.receipt import InstallReceipt
from formulary.core.models.run import (
    InstalledArtifact,
    RunResult,
    RunStatus,
    Stage,
    StepOutcome,
)

__all__ = [
    # formula.py
    "Formula",
    # receipt.py
    "InstallReceipt",
    # run.py
    "InstalledArtifact",
    "RunResult",
    "RunStatus",
    "SourceLocator",
    "SourceStrategy",
    "Stage",
    "StepOutcome",
]
