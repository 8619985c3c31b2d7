"""
InstallReceipt — the durable record of an installed formula.

Serialized to ``<cellar>/<name>/INSTALL_RECEIPT.json``. It keeps a full
snapshot of the formula so the formula can be tested or reinstalled
by name after the recipe file is gone.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from formulary.core.models.formula import Formula
from formulary.core.models.run import InstalledArtifact


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class InstallReceipt(BaseModel):
    """What was installed, from which formula, and when."""

    schema_version: int = 1

    formula: Formula
    version: str | None = None
    revision: int = 0
    head: bool = False
    pinned: bool = False
    installed_at: str = Field(default_factory=_now_iso)
    run_id: str = ""

    artifacts: list[InstalledArtifact] = Field(default_factory=list)
    runtime_dependencies: list[str] = Field(default_factory=list)

    @property
    def name(self) -> str:
        return self.formula.name

    def owns(self, path: str) -> bool:
        """Whether ``path`` is a destination or link recorded by this receipt."""
        return any(path in (a.destination, a.link) for a in self.artifacts)

    @classmethod
    def for_install(
        cls,
        formula: Formula,
        artifacts: list[InstalledArtifact],
        head: bool = False,
        run_id: str = "",
    ) -> InstallReceipt:
        return cls(
            formula=formula,
            version=formula.version,
            revision=formula.revision,
            head=head,
            pinned=formula.pinned and not head,
            run_id=run_id,
            artifacts=artifacts,
            runtime_dependencies=list(formula.runtime_dependencies),
        )
