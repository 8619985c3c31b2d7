"""
Mock runner — scripted test double for command execution.

Used in tests to simulate fetches, builds and verification without
touching real tools. Responses are matched by command prefix; an
optional side effect lets a scripted command produce files the way
the real tool would (a clone populating a directory, a build writing
a binary).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from formulary.adapters.base import CommandResult, CommandRunner

SideEffect = Callable[[str, str, dict[str, str]], None]


@dataclass
class RecordedCall:
    """One invocation seen by the mock."""

    command: str
    cwd: str
    env: dict[str, str]
    timeout: int | None = None


@dataclass
class _Script:
    prefix: str
    exit_code: int
    stdout: str
    stderr: str
    side_effect: SideEffect | None


class MockCommandRunner(CommandRunner):
    """Universal mock runner for testing.

    By default every command succeeds with empty output. Scripts are
    checked in registration order; the first whose prefix matches the
    command wins.
    """

    def __init__(self, runner_name: str = "mock", available: bool = True):
        self._name = runner_name
        self._available = available
        self._scripts: list[_Script] = []
        self._calls: list[RecordedCall] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def calls(self) -> list[RecordedCall]:
        """All invocations this mock has received."""
        return self._calls

    @property
    def commands(self) -> list[str]:
        """Just the command strings, in call order."""
        return [c.command for c in self._calls]

    @property
    def call_count(self) -> int:
        return len(self._calls)

    def is_available(self) -> bool:
        return self._available

    def on(
        self,
        prefix: str,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        side_effect: SideEffect | None = None,
    ) -> MockCommandRunner:
        """Script the response for commands starting with ``prefix``."""
        self._scripts.append(_Script(prefix, exit_code, stdout, stderr, side_effect))
        return self

    def fail(self, prefix: str, exit_code: int = 1, stderr: str = "mock failure") -> MockCommandRunner:
        """Configure commands starting with ``prefix`` to fail."""
        return self.on(prefix, exit_code=exit_code, stderr=stderr)

    def run(
        self,
        command: str,
        cwd: str,
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        env = dict(env or {})
        self._calls.append(RecordedCall(command=command, cwd=cwd, env=env, timeout=timeout))

        for script in self._scripts:
            if command.startswith(script.prefix):
                if script.side_effect is not None:
                    script.side_effect(command, cwd, env)
                return CommandResult(
                    command=command,
                    exit_code=script.exit_code,
                    stdout=script.stdout,
                    stderr=script.stderr,
                )

        return CommandResult(command=command, exit_code=0)

    def reset(self) -> None:
        """Clear recorded calls and scripts."""
        self._calls.clear()
        self._scripts.clear()
