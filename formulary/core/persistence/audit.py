"""
Run ledger — append-only history of formula runs.

Every install or test run writes one entry to an NDJSON
(newline-delimited JSON) file. Entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from formulary.core.models.run import RunResult

logger = logging.getLogger(__name__)


class LedgerEntry(BaseModel):
    """A single ledger entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    formula: str = ""
    action: str = ""               # install, test

    # Results
    status: str = ""               # succeeded, failed, skipped
    stage: str | None = None
    error_kind: str | None = None
    installed: bool = False
    verified: bool | None = None
    artifacts: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    exit_status: int = 0
    command: str | None = None      # failing step or test command

    @classmethod
    def from_result(cls, result: RunResult) -> LedgerEntry:
        return cls(
            run_id=result.run_id,
            formula=result.formula,
            action=result.action,
            status=result.status,
            stage=result.stage,
            error_kind=result.error_kind,
            installed=result.installed,
            verified=result.verified,
            artifacts=[a.name for a in result.artifacts],
            duration_ms=result.duration_ms,
            errors=[result.error] if result.error else [],
            warnings=list(result.warnings),
            exit_status=result.exit_status,
            command=result.command,
        )


class RunLedger:
    """Append-only ledger writer.

    Each call to write() appends a single JSON line. The file and its
    directory are created if they don't exist.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record(self, result: RunResult) -> None:
        """Append the outcome of a run."""
        self.write(LedgerEntry.from_result(result))

    def write(self, entry: LedgerEntry) -> None:
        data = entry.model_dump(mode="json")
        line = json.dumps(data, ensure_ascii=False) + "\n"

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock, self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Ledger entry written: %s/%s", entry.action, entry.run_id)
        except OSError as e:
            logger.error("Failed to write ledger entry: %s", e)

    def read_all(self) -> list[LedgerEntry]:
        """Read all entries, oldest first."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(LedgerEntry.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read run ledger: %s", e)

        return entries

    def read_recent(self, n: int = 20) -> list[LedgerEntry]:
        return self.read_all()[-n:]
