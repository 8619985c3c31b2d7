"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import shlex
import stat
from pathlib import Path
from typing import Any, Callable

import pytest

from formulary.adapters.mock import MockCommandRunner
from formulary.core.config.settings import Settings
from formulary.core.engine.pipeline import FormulaRunner
from formulary.core.models.formula import Formula
from formulary.core.persistence.audit import RunLedger
from formulary.core.persistence.install_state import InstallState

EXAMPLE_FORMULA: dict[str, Any] = {
    "name": "example1",
    "desc": "A generic formula to install the project build",
    "homepage": "https://go-migrate-gsm.github.io",
    "source": {
        "url": "https://github.com/dathan/go-migrate-gsm.git",
        "strategy": "git",
    },
    "version": "master",
    "revision": 1,
    "head": "https://github.com/dathan/go-migrate-gsm.git",
    "build_dependencies": ["make", "go"],
    "env": {"GOPATH": "{buildpath}"},
    "stage_path": "src/github.com/dathan/go-migrate-gsm",
    "install_steps": ["make build"],
    "artifacts": {"bin/example1": "example1"},
    "test_steps": ["true"],
}


class FakeInstalled:
    """Install-state query answering from a fixed set of names."""

    def __init__(self, names: set[str]):
        self.names = set(names)
        self.queries: list[str] = []

    def is_installed(self, name: str) -> bool:
        self.queries.append(name)
        return name in self.names


def write_executable(path: Path, body: str = "#!/bin/sh\necho hello\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def fake_clone(command: str, cwd: str, env: dict[str, str]) -> None:
    """Side effect for ``git clone <url> <dest>``: populate dest."""
    dest = Path(shlex.split(command)[-1])
    dest.mkdir(parents=True, exist_ok=True)
    (dest / "Makefile").write_text("build:\n\tgo build -o bin/example1\n")
    (dest / "main.go").write_text("package main\n")


def fake_build(command: str, cwd: str, env: dict[str, str]) -> None:
    """Side effect for ``make build``: produce bin/example1 in cwd."""
    write_executable(Path(cwd) / "bin" / "example1")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with an isolated prefix and temp dir."""
    return Settings(
        prefix=tmp_path / "prefix",
        tmp_dir=tmp_path / "tmp",
        host_tools=False,
    )


class PresetInstallState(InstallState):
    """InstallState where some tools count as installed without a receipt."""

    def __init__(self, prefix: Path, present: set[str]):
        super().__init__(prefix, host_tools=False)
        self.present = set(present)

    def is_installed(self, name: str) -> bool:
        return name in self.present or super().is_installed(name)


@pytest.fixture
def state(settings: Settings) -> InstallState:
    """Isolated install state where the build tools make and go are present."""
    return PresetInstallState(settings.prefix, {"make", "go"})


@pytest.fixture
def ledger(settings: Settings) -> RunLedger:
    return RunLedger(settings.ledger_path)


@pytest.fixture
def mock_runner() -> MockCommandRunner:
    return MockCommandRunner()


@pytest.fixture
def build_runner() -> MockCommandRunner:
    """Mock runner where clone and ``make build`` behave like the real tools."""
    runner = MockCommandRunner()
    runner.on("git clone", side_effect=fake_clone)
    runner.on("make build", side_effect=fake_build)
    return runner


@pytest.fixture
def make_formula() -> Callable[..., Formula]:
    """Factory for the example formula with field overrides."""

    def _make(**overrides: Any) -> Formula:
        return Formula.model_validate({**EXAMPLE_FORMULA, **overrides})

    return _make


@pytest.fixture
def local_formula(tmp_path: Path) -> Callable[..., Formula]:
    """Factory for a local-source formula that builds with a real shell."""

    def _make(**overrides: Any) -> Formula:
        src = tmp_path / "src-tree"
        src.mkdir(exist_ok=True)
        (src / "hello.sh").write_text("#!/bin/sh\necho hello from formulary\n")
        data = {
            "name": "hello",
            "source": {"url": str(src), "strategy": "local"},
            "version": "1.0",
            "install_steps": [
                "mkdir -p bin",
                "cp hello.sh bin/hello",
                "chmod +x bin/hello",
            ],
            "artifacts": {"bin/hello": "hello"},
            "test_steps": ["hello | grep -q 'hello from formulary'"],
        }
        return Formula.model_validate({**data, **overrides})

    return _make


@pytest.fixture
def make_runner(settings: Settings, state: InstallState, ledger: RunLedger):
    """Factory for a FormulaRunner bound to the isolated prefix."""

    def _make(runner=None, install_state=None) -> FormulaRunner:
        return FormulaRunner(
            settings,
            state=install_state or state,
            runner=runner,
            ledger=ledger,
        )

    return _make


@pytest.fixture
def fake_installed() -> type[FakeInstalled]:
    """The FakeInstalled class, for gate tests."""
    return FakeInstalled
