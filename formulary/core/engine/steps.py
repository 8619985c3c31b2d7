"""
Step executor — run a formula's install steps in order.

Every step is a separate shell invocation rooted at the stage
directory, under the workspace environment. Execution is strictly
sequential and stops at the first non-zero exit: later steps may
depend on files earlier ones produce.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from formulary.adapters.base import CommandRunner
from formulary.core.engine.errors import StepFailed
from formulary.core.models.formula import Formula
from formulary.core.models.run import StepOutcome

if TYPE_CHECKING:
    from formulary.core.engine.workspace import Workspace

logger = logging.getLogger(__name__)


def substitute(template: str, variables: dict[str, str]) -> str:
    """Replace ``{var}`` placeholders for the known variables only.

    Plain token replacement, so shell syntax such as ``${HOME}`` or
    ``awk '{print $1}'`` passes through untouched.
    """
    for key, value in variables.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


def step_variables(formula: Formula, workspace: Workspace, prefix: str) -> dict[str, str]:
    """Variables available to install step templates."""
    keg = os.path.join(prefix, "Cellar", formula.name)
    return {
        **workspace.variables(),
        "name": formula.name,
        "version": formula.version or "",
        "prefix": keg,
        "bin": os.path.join(keg, "bin"),
        "nproc": str(os.cpu_count() or 1),
    }


def run_steps(
    formula: Formula,
    workspace: Workspace,
    runner: CommandRunner,
    prefix: str,
    timeout: int | None = None,
) -> list[StepOutcome]:
    """Execute ``formula.install_steps`` in declared order.

    Returns:
        One StepOutcome per executed step (all successful).

    Raises:
        StepFailed: At the first step exiting non-zero, with its
            zero-based index, command, exit code and captured output.
    """
    variables = step_variables(formula, workspace, prefix)
    cwd = str(workspace.stage_dir)
    outcomes: list[StepOutcome] = []

    for index, template in enumerate(formula.install_steps):
        command = substitute(template, variables)
        logger.info("%s: step %d: %s", formula.name, index, command)

        result = runner.run(command, cwd=cwd, env=workspace.env, timeout=timeout)
        outcome = StepOutcome(
            index=index,
            command=command,
            exit_code=result.exit_code,
            output=result.output,
            duration_ms=result.duration_ms,
        )
        outcomes.append(outcome)

        if not result.ok:
            logger.error(
                "%s: step %d exited with %d: %s",
                formula.name,
                index,
                result.exit_code,
                command,
            )
            raise StepFailed(
                index=index,
                command=command,
                exit_code=result.exit_code,
                output=result.output,
                formula=formula.name,
                steps=outcomes,
            )

    return outcomes
