"""
Dependency gate — refuse to start a build whose dependencies are absent.

Runs before any workspace exists. All missing names are reported at
once so the caller sees the complete picture.
"""

from __future__ import annotations

import logging
from typing import Protocol

from formulary.core.engine.errors import MissingDependency
from formulary.core.models.formula import Formula

logger = logging.getLogger(__name__)


class InstalledQuery(Protocol):
    def is_installed(self, name: str) -> bool: ...


def check_dependencies(formula: Formula, state: InstalledQuery) -> None:
    """Verify every build and run-time dependency is installed.

    Raises:
        MissingDependency: Listing every dependency that is not installed.
    """
    missing = [name for name in formula.dependencies if not state.is_installed(name)]

    if missing:
        logger.warning("%s: missing dependencies %s", formula.name, ", ".join(missing))
        raise MissingDependency(missing, formula=formula.name)

    logger.info(
        "%s: %d dependencies satisfied", formula.name, len(formula.dependencies)
    )
