"""
Artifact installer — move declared build outputs into the install prefix.

Each formula installs into its own keg, ``<prefix>/Cellar/<name>/``.
An installed name without a directory part lands in the keg's ``bin/``
and gets a shared link ``<prefix>/bin/<name>``; a name with a directory
part (``share/man/man1/tool.1``) is placed relative to the keg, unlinked.

Destinations inside the keg belong to the formula by name and may be
replaced on reinstall. A shared link may only be replaced when the
previous receipt of the *same* formula recorded it; anything else is
an ArtifactConflict. A call holds the locks of every path it touches
for its whole duration.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from formulary.core.engine.errors import ArtifactConflict, ArtifactInstallFailed, ArtifactMissing
from formulary.core.engine.workspace import Workspace
from formulary.core.models.formula import Formula
from formulary.core.models.receipt import InstallReceipt
from formulary.core.models.run import InstalledArtifact
from formulary.core.persistence.install_state import InstallState

logger = logging.getLogger(__name__)


@dataclass
class _Placement:
    source_rel: str
    source: Path
    name: str
    destination: Path
    link: Path | None


def plan_placements(
    formula: Formula,
    workspace: Workspace,
    state: InstallState,
) -> list[_Placement]:
    """Resolve every declared artifact to its source and destinations.

    Raises:
        ArtifactMissing: For the first declared source absent from the
            stage directory.
    """
    keg = state.install_prefix_for(formula.name)
    placements = []

    for source_rel, installed in formula.artifacts.items():
        source = workspace.stage_dir / source_rel
        if not source.exists():
            raise ArtifactMissing(source_rel, formula=formula.name)

        if "/" in installed:
            destination, link = keg / installed, None
        else:
            destination, link = keg / "bin" / installed, state.bin_dir / installed

        placements.append(
            _Placement(
                source_rel=source_rel,
                source=source,
                name=Path(installed).name,
                destination=destination,
                link=link,
            )
        )

    return placements


def install_artifacts(
    formula: Formula,
    workspace: Workspace,
    state: InstallState,
) -> list[InstalledArtifact]:
    """Copy declared artifacts from the stage dir into the formula's keg.

    The locks of every path this call touches (destinations, links and
    orphans of the previous receipt) are taken together before the
    conflict check, so nothing is written unless the whole set can be.

    Returns:
        One InstalledArtifact per declared mapping, in declared order.

    Raises:
        ArtifactMissing: A declared source was not produced.
        ArtifactConflict: A shared link belongs to another formula or
            to an unmanaged file.
        ArtifactInstallFailed: The filesystem refused a write. On a
            first install, whatever this call wrote is removed again.
    """
    placements = plan_placements(formula, workspace, state)
    previous = state.read_receipt(formula.name)
    orphans = _orphans(previous, placements)

    touched = [p.destination for p in placements]
    touched += [p.link for p in placements if p.link is not None]
    for artifact in orphans:
        touched.append(Path(artifact.destination))
        if artifact.link:
            touched.append(Path(artifact.link))

    with state.locks.hold_all(touched):
        for placement in placements:
            if placement.link is not None:
                _check_link(formula, placement.link, previous, state)

        written: list[Path] = []
        try:
            for artifact in orphans:
                _remove_orphan(artifact)
            for placement in placements:
                _copy(placement.source, placement.destination)
                written.append(placement.destination)
                if placement.link is not None:
                    _link(placement.link, placement.destination)
                    written.append(placement.link)
                logger.info(
                    "%s: installed %s → %s",
                    formula.name, placement.source_rel, placement.destination,
                )
        except (OSError, shutil.Error) as e:
            if previous is None:
                _rollback(written)
            path = getattr(e, "filename", None) or state.install_prefix_for(formula.name)
            raise ArtifactInstallFailed(str(path), str(e), formula=formula.name) from e

    return [
        InstalledArtifact(
            name=p.name,
            source=p.source_rel,
            destination=str(p.destination),
            link=str(p.link) if p.link else None,
        )
        for p in placements
    ]


def _check_link(
    formula: Formula,
    link: Path,
    previous: InstallReceipt | None,
    state: InstallState,
) -> None:
    if not (link.exists() or link.is_symlink()):
        return
    if previous is not None and previous.owns(str(link)):
        return

    keg = state.install_prefix_for(formula.name)
    if link.is_symlink():
        target = Path(os.readlink(link))
        if not target.is_absolute():
            target = link.parent / target
        # A leftover link into our own keg (e.g. from an interrupted install)
        if _is_within(target, keg):
            return

    raise ArtifactConflict(str(link), owner=state.owner_of(link), formula=formula.name)


def _orphans(
    previous: InstallReceipt | None,
    placements: list[_Placement],
) -> list[InstalledArtifact]:
    """Artifacts the previous install recorded but this one does not."""
    if previous is None:
        return []
    keep = {str(p.destination) for p in placements}
    return [a for a in previous.artifacts if a.destination not in keep]


def _remove_orphan(artifact: InstalledArtifact) -> None:
    _remove(Path(artifact.destination))
    if artifact.link:
        link = Path(artifact.link)
        if link.is_symlink():
            link.unlink()
    logger.debug("removed orphaned %s", artifact.destination)


def _rollback(written: list[Path]) -> None:
    for path in reversed(written):
        try:
            _remove(path)
        except OSError as e:
            logger.warning("could not roll back %s: %s", path, e)


def _copy(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)

    if source.is_dir():
        _remove(destination)
        shutil.copytree(source, destination, symlinks=True)
        return

    # Copy beside the destination, then rename over it
    tmp = destination.with_name(f".{destination.name}.partial")
    shutil.copy2(source, tmp)
    os.replace(tmp, destination)


def _link(link: Path, destination: Path) -> None:
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_symlink() or link.exists():
        _remove(link)
    link.symlink_to(destination)


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True
