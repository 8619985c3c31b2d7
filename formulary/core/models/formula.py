"""
Formula model — the declarative recipe for one package.

A formula says where the source comes from, what must already be
installed, which shell steps build it, which produced files are
installed and how the install is verified. It is loaded once per run
and never mutated: the models are frozen, list fields are tuples and
mapping fields are read-only views.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from enum import StrEnum
from pathlib import PurePosixPath
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+@-]*$")

# Version values that name a branch or a moving target rather than a commit
SENTINEL_VERSIONS = frozenset(
    {"", "master", "main", "head", "HEAD", "latest", "current", "stable", "trunk"}
)


class SourceStrategy(StrEnum):
    """How a formula's source is acquired."""

    ARCHIVE = "archive"
    GIT = "git"
    LOCAL = "local"


class SourceLocator(BaseModel):
    """Where the source lives and how to fetch it."""

    model_config = ConfigDict(frozen=True)

    url: str
    strategy: SourceStrategy = SourceStrategy.ARCHIVE
    checksum: str | None = None     # "sha256:<hex>" or bare sha256 hex

    @field_validator("url")
    @classmethod
    def _url_present(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("source url must not be empty")
        return v.strip()

    @field_validator("checksum")
    @classmethod
    def _normalize_checksum(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        v = v.strip().lower()
        if ":" not in v:
            v = f"sha256:{v}"
        algo = v.split(":", 1)[0]
        if algo not in ("sha256", "sha1", "md5"):
            raise ValueError(f"unsupported checksum algorithm '{algo}'")
        return v


class Formula(BaseModel):
    """Immutable description of one package build."""

    model_config = ConfigDict(frozen=True)

    name: str
    desc: str = ""
    homepage: str = ""

    source: SourceLocator
    version: str | None = None
    revision: int = 0
    head: SourceLocator | None = None

    build_dependencies: tuple[str, ...] = ()
    runtime_dependencies: tuple[str, ...] = ()

    env: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    stage_path: str = ""
    install_steps: tuple[str, ...] = ()
    artifacts: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    test_steps: tuple[str, ...] = ()

    @field_validator("name")
    @classmethod
    def _safe_name(cls, v: str) -> str:
        if not v or not _SAFE_NAME.match(v) or v in (".", ".."):
            raise ValueError(f"formula name {v!r} is not a safe filesystem name")
        return v

    @field_validator("head", mode="before")
    @classmethod
    def _head_shorthand(cls, v: object) -> object:
        # `head: https://...` is a git URL
        if isinstance(v, str):
            return {"url": v, "strategy": SourceStrategy.GIT}
        return v

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, v: object) -> object:
        # YAML reads `version: 1.0` as a float
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("stage_path")
    @classmethod
    def _relative_stage(cls, v: str) -> str:
        return _relative_path(v, "stage_path", allow_empty=True)

    @field_validator("env")
    @classmethod
    def _read_only_env(cls, v: Mapping[str, str]) -> Mapping[str, str]:
        return MappingProxyType(dict(v))

    @field_validator("artifacts")
    @classmethod
    def _relative_artifacts(cls, v: Mapping[str, str]) -> Mapping[str, str]:
        for src, dest in v.items():
            _relative_path(src, "artifact source")
            _relative_path(dest, "artifact name")
        return MappingProxyType(dict(v))

    @field_serializer("env", "artifacts")
    def _plain_mapping(self, v: Mapping[str, str]) -> dict[str, str]:
        return dict(v)

    @model_validator(mode="after")
    def _steps_match_artifacts(self) -> Formula:
        if self.install_steps and not self.artifacts:
            raise ValueError("install_steps declared but no artifacts for them to produce")
        if (
            self.artifacts
            and not self.install_steps
            and self.source.strategy != SourceStrategy.LOCAL
        ):
            raise ValueError("artifacts declared but no install_steps to produce them")
        return self

    # ── Derived views ────────────────────────────────────────────

    @property
    def dependencies(self) -> list[str]:
        """Build then run-time dependencies, deduplicated in declared order."""
        return list(dict.fromkeys([*self.build_dependencies, *self.runtime_dependencies]))

    @property
    def has_sentinel_version(self) -> bool:
        """True when ``version`` does not pin a resolvable revision."""
        return self.version is None or self.version.strip() in SENTINEL_VERSIONS

    @property
    def pinned(self) -> bool:
        """Whether the primary source is pinned to fixed content."""
        if self.source.strategy == SourceStrategy.ARCHIVE:
            return self.source.checksum is not None
        if self.source.strategy == SourceStrategy.GIT:
            return not self.has_sentinel_version
        return True

    @property
    def display_version(self) -> str:
        version = self.version or "HEAD"
        return f"{version}_{self.revision}" if self.revision else version

    def head_locator(self) -> SourceLocator:
        """The locator used in head mode (falls back to the primary source)."""
        return self.head or self.source


def _relative_path(value: str, what: str, allow_empty: bool = False) -> str:
    value = value.strip()
    if not value:
        if allow_empty:
            return ""
        raise ValueError(f"{what} must not be empty")
    path = PurePosixPath(value)
    if path.is_absolute() or ".." in path.parts:
        raise ValueError(f"{what} {value!r} must be a relative path inside the build tree")
    return str(path)
