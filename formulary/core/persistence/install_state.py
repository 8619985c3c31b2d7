"""
Install state — the durable record of what is installed where.

Each installed formula owns a keg directory ``<cellar>/<name>/`` holding
its artifacts and an ``INSTALL_RECEIPT.json``. Receipts are written
atomically (write to temp file, then rename) so a crash mid-install
never leaves a half-written record.

The install prefix is shared by every run in the process. Writers
serialize on a per-destination-path lock from ``PathLocks``; unrelated
paths never contend. The state is an explicit object handed to the
engine, so tests run against isolated prefixes.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path

from formulary.core.models.receipt import InstallReceipt

logger = logging.getLogger(__name__)

RECEIPT_FILE = "INSTALL_RECEIPT.json"


class PathLocks:
    """Registry of one lock per filesystem path.

    The key resolves the parent directory but not the final component,
    so a symlink and the file it points to get different locks.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @staticmethod
    def key_for(path: Path) -> str:
        return str(path.parent.resolve() / path.name)

    def lock_for(self, path: Path) -> threading.Lock:
        return self._lock(self.key_for(path))

    def _lock(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, path: Path) -> Iterator[None]:
        """Hold the lock for ``path`` for the duration of the block."""
        lock = self.lock_for(path)
        with lock:
            yield

    @contextmanager
    def hold_all(self, paths: Iterable[Path]) -> Iterator[None]:
        """Hold the locks of every path at once, taken in sorted key order."""
        keys = sorted({self.key_for(p) for p in paths})
        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self._lock(key))
            yield

    def __len__(self) -> int:
        return len(self._locks)


class InstallState:
    """Query and update the install prefix.

    Args:
        prefix: Root of the install tree.
        host_tools: If True, a dependency found on the host PATH also
            counts as installed (``make``, ``go``, ...).
        locks: Shared lock registry. A fresh one is created if omitted.
    """

    def __init__(
        self,
        prefix: Path,
        host_tools: bool = True,
        locks: PathLocks | None = None,
    ):
        self.prefix = prefix.expanduser().resolve()
        self.host_tools = host_tools
        self.locks = locks or PathLocks()

    @property
    def cellar(self) -> Path:
        return self.prefix / "Cellar"

    @property
    def bin_dir(self) -> Path:
        return self.prefix / "bin"

    def install_prefix_for(self, name: str) -> Path:
        """The keg directory for formula ``name``."""
        return self.cellar / name

    def receipt_path(self, name: str) -> Path:
        return self.install_prefix_for(name) / RECEIPT_FILE

    # ── Queries ──────────────────────────────────────────────────

    def is_installed(self, name: str) -> bool:
        if self.receipt_path(name).is_file():
            return True
        if self.host_tools and shutil.which(name) is not None:
            logger.debug("Dependency '%s' satisfied by host tool", name)
            return True
        return False

    def read_receipt(self, name: str) -> InstallReceipt | None:
        """Load the receipt for ``name``, or None if not installed."""
        path = self.receipt_path(name)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return InstallReceipt.model_validate(data)
        except json.JSONDecodeError as e:
            logger.warning("Corrupt receipt %s: %s", path, e)
            return None
        except Exception as e:
            logger.warning("Cannot load receipt %s: %s", path, e)
            return None

    def installed(self) -> list[InstallReceipt]:
        """All receipts in the cellar, sorted by formula name."""
        if not self.cellar.is_dir():
            return []
        receipts = []
        for keg in sorted(self.cellar.iterdir()):
            receipt = self.read_receipt(keg.name) if keg.is_dir() else None
            if receipt is not None:
                receipts.append(receipt)
        return receipts

    def owner_of(self, path: Path) -> str | None:
        """Name of the installed formula that recorded ``path``, if any."""
        target = str(path)
        for receipt in self.installed():
            if receipt.owns(target):
                return receipt.name
        return None

    # ── Updates ──────────────────────────────────────────────────

    def write_receipt(self, receipt: InstallReceipt) -> Path:
        """Persist a receipt (atomic write)."""
        path = self.receipt_path(receipt.name)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = receipt.model_dump(mode="json")
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

        with self.locks.hold(path):
            fd, tmp_path = tempfile.mkstemp(
                dir=path.parent,
                prefix=".receipt_",
                suffix=".tmp",
            )
            tmp = Path(tmp_path)
            try:
                with open(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                tmp.replace(path)
            except Exception:
                tmp.unlink(missing_ok=True)
                raise

        logger.debug("Receipt saved to %s", path)
        return path

    def remove(self, name: str) -> InstallReceipt | None:
        """Uninstall ``name``: drop its links and its keg.

        Returns:
            The receipt that was removed, or None if nothing was installed.
        """
        receipt = self.read_receipt(name)
        if receipt is None:
            return None

        for artifact in receipt.artifacts:
            if artifact.link:
                link = Path(artifact.link)
                with self.locks.hold(link):
                    if link.is_symlink():
                        link.unlink()

        keg = self.install_prefix_for(name)
        shutil.rmtree(keg, ignore_errors=True)
        logger.info("Removed %s (%d artifacts)", name, len(receipt.artifacts))
        return receipt
