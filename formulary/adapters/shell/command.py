"""
Shell command runner — execute shell commands and capture output.

This is the runner used for real installs. Every formula step is a
shell command template, so commands always go through ``sh -c``.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import time

from formulary.adapters.base import TIMEOUT_EXIT_CODE, CommandResult, CommandRunner

logger = logging.getLogger(__name__)

# Keep at most this many characters of each stream per command
_OUTPUT_LIMIT = 64_000


class ShellCommandRunner(CommandRunner):
    """Execute shell commands through ``subprocess.run``.

    Args:
        default_timeout: Timeout in seconds when the caller gives none.
    """

    def __init__(self, default_timeout: int = 3600):
        self._default_timeout = default_timeout

    @property
    def name(self) -> str:
        return "shell"

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def run(
        self,
        command: str,
        cwd: str,
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        timeout = timeout or self._default_timeout
        logger.debug("Executing: %s (cwd=%s)", command, cwd)
        start = time.monotonic()

        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                command=command,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_tail(e.stdout),
                stderr=f"Command timed out after {timeout}s",
                duration_ms=int((time.monotonic() - start) * 1000),
                timed_out=True,
            )
        except OSError as e:
            # cwd missing, sh not executable, ...
            return CommandResult(
                command=command,
                exit_code=127,
                stderr=f"Command execution error: {e}",
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug("Exit %d after %dms: %s", result.returncode, elapsed_ms, command)
        return CommandResult(
            command=command,
            exit_code=result.returncode,
            stdout=_tail(result.stdout),
            stderr=_tail(result.stderr),
            duration_ms=elapsed_ms,
        )


def _tail(text: str | bytes | None) -> str:
    """Trim captured output to the last ``_OUTPUT_LIMIT`` characters."""
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-_OUTPUT_LIMIT:]
