"""
Source stager — realize a formula's source into the workspace.

Three acquisition strategies:

    archive  fetch (curl, through the runner) or read a local file,
             verify its checksum when one is declared, extract
    git      clone, then check out the declared revision
    local    copy an existing source tree verbatim

The stage directory is populated from scratch each time, so staging is
idempotent in a fresh workspace. Any failure raises SourceUnavailable;
nothing is retried here.
"""

from __future__ import annotations

import hashlib
import logging
import shlex
import shutil
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

from formulary.adapters.base import CommandRunner
from formulary.core.engine.errors import SourceUnavailable
from formulary.core.engine.workspace import Workspace
from formulary.core.models.formula import Formula, SourceLocator, SourceStrategy

logger = logging.getLogger(__name__)


def stage_source(
    formula: Formula,
    workspace: Workspace,
    runner: CommandRunner,
    head: bool = False,
    fetch_timeout: int = 600,
) -> list[str]:
    """Populate ``workspace.stage_dir`` with the formula's source.

    Args:
        formula: The formula being built.
        workspace: The run's workspace.
        runner: Command runner used for curl and git.
        head: Build the latest unpinned source from the head locator.
        fetch_timeout: Timeout in seconds for fetch commands.

    Returns:
        Warnings raised while staging (unpinned source, sentinel version).

    Raises:
        SourceUnavailable: If the source cannot be realized.
    """
    locator = formula.head_locator() if head else formula.source
    warnings: list[str] = []

    logger.info("%s: staging %s source from %s", formula.name, locator.strategy, locator.url)

    try:
        if locator.strategy == SourceStrategy.GIT:
            _stage_git(formula, locator, workspace, runner, head, fetch_timeout, warnings)
        elif locator.strategy == SourceStrategy.ARCHIVE:
            _stage_archive(formula, locator, workspace, runner, head, fetch_timeout, warnings)
        elif locator.strategy == SourceStrategy.LOCAL:
            _stage_local(formula, locator, workspace)
        else:
            raise SourceUnavailable(locator.url, f"unknown strategy {locator.strategy}", formula=formula.name)
    except OSError as e:
        raise SourceUnavailable(locator.url, str(e), formula=formula.name) from e

    for message in warnings:
        logger.warning("%s: %s", formula.name, message)
    return warnings


# ── git ─────────────────────────────────────────────────────────


def _stage_git(
    formula: Formula,
    locator: SourceLocator,
    workspace: Workspace,
    runner: CommandRunner,
    head: bool,
    timeout: int,
    warnings: list[str],
) -> None:
    dest = workspace.stage_dir
    dest.parent.mkdir(parents=True, exist_ok=True)

    clone = runner.run(
        f"git clone --quiet {shlex.quote(locator.url)} {shlex.quote(str(dest))}",
        cwd=str(workspace.build_root),
        env=workspace.env,
        timeout=timeout,
    )
    if not clone.ok:
        raise SourceUnavailable(
            locator.url,
            f"git clone exited with {clone.exit_code}",
            formula=formula.name,
            output=clone.output,
        )

    if head:
        warnings.append("head mode: building the default branch")
        return

    if formula.has_sentinel_version:
        warnings.append(
            f"version {formula.version!r} is not a pinned revision; "
            "using the default branch"
        )
        return

    revision = formula.version or ""
    checkout = runner.run(
        f"git checkout --quiet {shlex.quote(revision)}",
        cwd=str(dest),
        env=workspace.env,
        timeout=timeout,
    )
    if not checkout.ok:
        warnings.append(
            f"revision {revision!r} could not be resolved; using the default branch"
        )


# ── archive ─────────────────────────────────────────────────────


def _stage_archive(
    formula: Formula,
    locator: SourceLocator,
    workspace: Workspace,
    runner: CommandRunner,
    head: bool,
    timeout: int,
    warnings: list[str],
) -> None:
    local = _local_path(locator.url)
    if local is not None:
        if not local.is_file():
            raise SourceUnavailable(locator.url, "archive not found", formula=formula.name)
        archive = local
    else:
        archive = workspace.downloads / _archive_filename(locator.url)
        fetch = runner.run(
            f"curl -fsSL -o {shlex.quote(str(archive))} {shlex.quote(locator.url)}",
            cwd=str(workspace.path),
            env=workspace.env,
            timeout=timeout,
        )
        if not fetch.ok or not archive.is_file():
            raise SourceUnavailable(
                locator.url,
                f"download failed (exit {fetch.exit_code})",
                formula=formula.name,
                output=fetch.output,
            )

    if locator.checksum and not head:
        if not verify_checksum(archive, locator.checksum):
            raise SourceUnavailable(locator.url, "checksum mismatch", formula=formula.name)
        logger.debug("%s: checksum verified (%s)", formula.name, locator.checksum.split(":")[0])
    else:
        warnings.append("archive is not pinned by a checksum; using it as fetched (head/latest)")

    try:
        extract_archive(archive, workspace.stage_dir)
    except (OSError, tarfile.TarError, zipfile.BadZipFile, ValueError) as e:
        raise SourceUnavailable(locator.url, f"cannot extract: {e}", formula=formula.name) from e


def verify_checksum(path: Path, expected: str) -> bool:
    """Verify a file digest. Format: ``algo:hex`` (sha256, sha1, md5)."""
    algo, expected_hash = expected.split(":", 1)
    h = hashlib.new(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest() == expected_hash.lower()


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract a tar or zip archive into ``dest``.

    If every member sits under one top-level directory, that directory
    is stripped (``--strip-components=1``). Members and links that would
    land outside ``dest`` are rejected; hard links are recreated inside it.
    """
    dest.mkdir(parents=True, exist_ok=True)

    if zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            names = zf.namelist()
            strip = _common_root(names)
            for info in zf.infolist():
                target = _member_target(dest, info.filename, strip)
                if target is None:
                    continue
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    target.chmod(mode)
        return

    with tarfile.open(archive) as tf:
        members = tf.getmembers()
        strip = _common_root([m.name for m in members])
        selected = []
        for member in members:
            target = _member_target(dest, member.name, strip)
            if target is None:
                continue
            changes = {"name": target.relative_to(dest).as_posix()}
            if member.islnk():
                # Hard link targets are archive paths, stripped like names
                link_target = _member_target(dest, member.linkname, strip)
                if link_target is None:
                    raise ValueError(f"unsafe link in archive: {member.name} -> {member.linkname}")
                changes["linkname"] = link_target.relative_to(dest).as_posix()
            selected.append(member.replace(**changes, deep=False))

        # The data filter rejects links that resolve outside dest
        tf.extractall(dest, members=selected, filter="data")


def _common_root(names: list[str]) -> str | None:
    tops = {PurePosixPath(n).parts[0] for n in names if PurePosixPath(n).parts}
    nested = any(len(PurePosixPath(n).parts) > 1 for n in names)
    if len(tops) == 1 and nested:
        return tops.pop()
    return None


def _member_target(dest: Path, name: str, strip: str | None) -> Path | None:
    parts = PurePosixPath(name).parts
    if strip and parts and parts[0] == strip:
        parts = parts[1:]
    if not parts:
        return None
    if PurePosixPath(name).is_absolute() or ".." in parts:
        raise ValueError(f"unsafe path in archive: {name}")
    return dest.joinpath(*parts)


def _archive_filename(url: str) -> str:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or "source.tar.gz"


# ── local ───────────────────────────────────────────────────────


def _stage_local(formula: Formula, locator: SourceLocator, workspace: Workspace) -> None:
    src = _local_path(locator.url) or Path(locator.url)
    if not src.is_dir():
        raise SourceUnavailable(locator.url, "local source directory not found", formula=formula.name)

    try:
        shutil.copytree(src, workspace.stage_dir, symlinks=True, dirs_exist_ok=True)
    except (OSError, shutil.Error) as e:
        raise SourceUnavailable(locator.url, f"copy failed: {e}", formula=formula.name) from e


def _local_path(url: str) -> Path | None:
    """Filesystem path for ``file://`` URLs and bare paths, else None."""
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path)).expanduser()
    if parsed.scheme == "":
        return Path(url).expanduser()
    return None
