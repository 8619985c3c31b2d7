"""Adapters — bindings to the processes the engine drives.

Public re-exports for convenient access.
"""

from formulary.adapters.base import CommandResult, CommandRunner
from formulary.adapters.mock import MockCommandRunner
from formulary.adapters.shell.command import ShellCommandRunner

__all__ = [
    "CommandResult",
    "CommandRunner",
    "MockCommandRunner",
    "ShellCommandRunner",
]
