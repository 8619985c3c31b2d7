"""
Environment builder — an isolated workspace for one formula run.

A workspace is a uniquely-named temp directory with a fixed layout:

    formulary-<name>-XXXXXX/
        build/          build root; source lands in build/<stage_path>
        home/           build-tool home (HOME, caches)
        tmp/            TMPDIR for the build
        downloads/      fetched archives

plus an environment snapshot that every later stage runs under. The
environment inherits only a small allowlist from the host, so builds
do not pick up the caller's configuration or write into its home.

Setting FORMULARY_BUILD_HOME (``Settings.build_home``) points the build
home at a persistent directory instead (relaxed hermeticity; that
directory is never removed).
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from formulary.core.config.settings import Settings
from formulary.core.engine.errors import WorkspaceAllocationFailed
from formulary.core.engine.steps import substitute
from formulary.core.models.formula import Formula

logger = logging.getLogger(__name__)

# Host variables a build may see
INHERITED_ENV = (
    "PATH",
    "LANG",
    "LC_ALL",
    "TERM",
    "USER",
    "LOGNAME",
    "SHELL",
    "SSL_CERT_FILE",
    "SSL_CERT_DIR",
)

_DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"


@dataclass
class Workspace:
    """Handle to an allocated workspace, owned by exactly one run."""

    path: Path
    build_root: Path
    stage_dir: Path
    build_home: Path
    env: dict[str, str] = field(default_factory=dict)
    keep: bool = False

    @property
    def tmp_dir(self) -> Path:
        return self.path / "tmp"

    @property
    def downloads(self) -> Path:
        return self.path / "downloads"

    def variables(self) -> dict[str, str]:
        """Template variables describing this workspace."""
        return {
            "buildpath": str(self.build_root),
            "stage": str(self.stage_dir),
            "build_home": str(self.build_home),
        }


def build_environment(
    formula: Formula,
    workspace: Workspace,
    prefix: Path,
    host_env: dict[str, str] | None = None,
) -> dict[str, str]:
    """Compose the environment snapshot for a run.

    Formula ``env`` values are templates; ``{buildpath}``, ``{stage}``,
    ``{build_home}``, ``{prefix}`` (the formula's keg), ``{name}`` and
    ``{version}`` are substituted.
    """
    host_env = dict(os.environ) if host_env is None else host_env
    env = {k: host_env[k] for k in INHERITED_ENV if k in host_env}
    env.setdefault("PATH", _DEFAULT_PATH)

    env.update(
        {
            "HOME": str(workspace.build_home),
            "XDG_CACHE_HOME": str(workspace.build_home / ".cache"),
            "TMPDIR": str(workspace.tmp_dir),
            "FORMULARY_BUILDPATH": str(workspace.build_root),
            "FORMULARY_PREFIX": str(prefix),
            "FORMULARY_FORMULA": formula.name,
        }
    )

    variables = {
        **workspace.variables(),
        "prefix": str(prefix / "Cellar" / formula.name),
        "name": formula.name,
        "version": formula.version or "",
    }
    for key, template in formula.env.items():
        env[key] = substitute(template, variables)

    return env


@contextmanager
def allocate_workspace(
    formula: Formula,
    settings: Settings,
    keep: bool = False,
) -> Iterator[Workspace]:
    """Allocate a workspace, yield it, and always clean it up.

    The workspace is removed on every exit path, including exceptions,
    KeyboardInterrupt and timeouts, unless ``keep`` is set.

    Raises:
        WorkspaceAllocationFailed: If the directory tree cannot be created.
    """
    root: Path | None = None
    try:
        tmp_base = settings.tmp_dir
        if tmp_base is not None:
            tmp_base.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=f"formulary-{formula.name}-", dir=tmp_base))

        build_root = root / "build"
        stage_dir = build_root / formula.stage_path if formula.stage_path else build_root
        build_home = settings.build_home or root / "home"

        for directory in (build_root, root / "tmp", root / "downloads", build_home):
            directory.mkdir(parents=True, exist_ok=True)

        workspace = Workspace(
            path=root,
            build_root=build_root,
            stage_dir=stage_dir,
            build_home=build_home,
            keep=keep,
        )
        workspace.env = build_environment(formula, workspace, settings.prefix)
    except OSError as e:
        if root is not None:
            shutil.rmtree(root, ignore_errors=True)
        raise WorkspaceAllocationFailed(
            f"Cannot allocate workspace for {formula.name}: {e}",
            formula=formula.name,
        ) from e

    if settings.build_home:
        logger.warning(
            "%s: using shared build home %s (build is not hermetic)",
            formula.name,
            settings.build_home,
        )
    logger.info("%s: workspace %s", formula.name, root)

    try:
        yield workspace
    finally:
        if workspace.keep:
            logger.warning("%s: keeping workspace %s", formula.name, root)
        else:
            shutil.rmtree(root, ignore_errors=True)
            logger.debug("%s: removed workspace %s", formula.name, root)
