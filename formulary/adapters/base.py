"""
Runner base — the contract between the engine and subprocesses.

The engine never calls ``subprocess`` directly. Source fetching, build
steps and verification commands all go through a ``CommandRunner``,
which makes every stage testable with a scripted double.

Runners NEVER raise for a failing command: the outcome, including
timeouts, is captured in the returned ``CommandResult``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

# Exit code reported when a command exceeds its timeout (matches coreutils ``timeout``)
TIMEOUT_EXIT_CODE = 124


class CommandResult(BaseModel):
    """Outcome of a single command invocation."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """Whether the command exited with status 0."""
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stdout first."""
        parts = [p for p in (self.stdout.strip(), self.stderr.strip()) if p]
        return "\n".join(parts)


class CommandRunner(ABC):
    """Abstract base class for command runners.

    To create a new runner:
        1. Subclass CommandRunner
        2. Implement name, is_available, run
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The runner identifier (e.g., 'shell', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check whether the runner can execute commands on this host.

        Should be fast and never raise.
        """

    @abstractmethod
    def run(
        self,
        command: str,
        cwd: str,
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run ``command`` in ``cwd`` with exactly ``env`` as its environment.

        MUST never raise for a failing or timed-out command.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
