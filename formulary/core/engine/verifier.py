"""
Verifier — run a formula's post-install test against the installed files.

Tests run in a scratch directory, never in the build workspace, with
the keg's ``bin/`` and the shared ``<prefix>/bin`` first on PATH, so
they exercise what was actually installed. Whatever the formula
declares is run, however trivial: an empty test list or ``true`` is an
explicit choice and passes.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile

from formulary.adapters.base import CommandRunner
from formulary.core.engine.errors import (
    MissingDependency,
    VerificationFailed,
    WorkspaceAllocationFailed,
)
from formulary.core.engine.steps import substitute
from formulary.core.engine.workspace import INHERITED_ENV
from formulary.core.models.formula import Formula
from formulary.core.models.run import StepOutcome
from formulary.core.persistence.install_state import InstallState

logger = logging.getLogger(__name__)


def verification_environment(formula: Formula, state: InstallState, scratch: str) -> dict[str, str]:
    """Environment for test commands: installed bins first on PATH."""
    keg = state.install_prefix_for(formula.name)
    env = {k: os.environ[k] for k in INHERITED_ENV if k in os.environ}
    path = os.pathsep.join([str(keg / "bin"), str(state.bin_dir), env.get("PATH", os.defpath)])
    env.update(
        {
            "PATH": path,
            "HOME": scratch,
            "TMPDIR": scratch,
            "FORMULARY_PREFIX": str(state.prefix),
            "FORMULARY_FORMULA": formula.name,
        }
    )
    return env


def verify(
    formula: Formula,
    state: InstallState,
    runner: CommandRunner,
    timeout: int | None = None,
    tmp_dir: str | None = None,
) -> list[StepOutcome]:
    """Run ``formula.test_steps`` in order, stopping at the first failure.

    Raises:
        MissingDependency: The formula itself is not installed.
        WorkspaceAllocationFailed: The scratch directory cannot be created.
        VerificationFailed: A test command exited non-zero.
    """
    if state.read_receipt(formula.name) is None:
        raise MissingDependency([formula.name], formula=formula.name)

    if not formula.test_steps:
        logger.info("%s: no test steps declared; nothing to verify", formula.name)
        return []

    keg = state.install_prefix_for(formula.name)
    variables = {
        "name": formula.name,
        "version": formula.version or "",
        "prefix": str(keg),
        "bin": str(keg / "bin"),
    }

    try:
        if tmp_dir is not None:
            os.makedirs(tmp_dir, exist_ok=True)
        scratch = tempfile.mkdtemp(prefix=f"formulary-test-{formula.name}-", dir=tmp_dir)
    except OSError as e:
        raise WorkspaceAllocationFailed(
            f"Cannot create test scratch directory: {e}", formula=formula.name
        ) from e

    outcomes: list[StepOutcome] = []
    try:
        env = verification_environment(formula, state, scratch)
        for index, template in enumerate(formula.test_steps):
            command = substitute(template, variables)
            logger.info("%s: test %d: %s", formula.name, index, command)

            result = runner.run(command, cwd=scratch, env=env, timeout=timeout)
            outcomes.append(
                StepOutcome(
                    index=index,
                    command=command,
                    exit_code=result.exit_code,
                    output=result.output,
                    duration_ms=result.duration_ms,
                )
            )
            if not result.ok:
                raise VerificationFailed(
                    index=index,
                    command=command,
                    exit_code=result.exit_code,
                    output=result.output,
                    formula=formula.name,
                    steps=outcomes,
                )
    finally:
        shutil.rmtree(scratch, ignore_errors=True)

    logger.info("%s: %d test steps passed", formula.name, len(outcomes))
    return outcomes
