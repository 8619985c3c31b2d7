"""
Engine settings — where things are installed and how runs behave.

Values are resolved in precedence order:
    explicit overrides (CLI flags)  >  FORMULARY_* env vars
    >  <prefix>/etc/formulary.yml  >  defaults
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from formulary.core.config.loader import ConfigError

logger = logging.getLogger(__name__)

SETTINGS_FILE = Path("etc") / "formulary.yml"
DEFAULT_PREFIX = Path("~/.formulary")

# env var → settings field
_ENV_FIELDS = {
    "FORMULARY_PREFIX": "prefix",
    "FORMULARY_TMPDIR": "tmp_dir",
    "FORMULARY_BUILD_HOME": "build_home",
    "FORMULARY_KEEP_TMP": "keep_tmp",
    "FORMULARY_STEP_TIMEOUT": "step_timeout",
    "FORMULARY_FETCH_TIMEOUT": "fetch_timeout",
    "FORMULARY_HOST_TOOLS": "host_tools",
}


class Settings(BaseModel):
    """Process-wide engine configuration."""

    prefix: Path = DEFAULT_PREFIX
    tmp_dir: Path | None = None         # None → system temp dir
    build_home: Path | None = None      # set → relaxed hermeticity
    keep_tmp: bool = False
    step_timeout: int = 3600
    fetch_timeout: int = 600
    host_tools: bool = True

    @field_validator("prefix", "tmp_dir", "build_home")
    @classmethod
    def _expand_user(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None

    @property
    def cellar(self) -> Path:
        """Per-formula install kegs live here."""
        return self.prefix / "Cellar"

    @property
    def bin_dir(self) -> Path:
        """Shared directory of links to installed executables."""
        return self.prefix / "bin"

    @property
    def ledger_path(self) -> Path:
        return self.prefix / "var" / "formulary" / "audit.ndjson"


def load_settings(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from overrides, environment and the settings file.

    Args:
        overrides: Explicit values (e.g. from CLI flags). ``None`` values
            are ignored.
        environ: Environment to read (default: ``os.environ``).

    Raises:
        ConfigError: If the settings file or any value is invalid.
    """
    environ = os.environ if environ is None else environ
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    from_env: dict[str, Any] = {}
    for var, field_name in _ENV_FIELDS.items():
        value = environ.get(var)
        if value:
            from_env[field_name] = value

    prefix = Path(
        overrides.get("prefix") or from_env.get("prefix") or DEFAULT_PREFIX
    ).expanduser()
    from_file = _read_settings_file(prefix / SETTINGS_FILE)

    merged = {**from_file, **from_env, **overrides}
    try:
        settings = Settings.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e

    logger.debug("Settings: prefix=%s tmp_dir=%s", settings.prefix, settings.tmp_dir)
    return settings


def _read_settings_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read settings from {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    logger.debug("Loaded settings from %s", path)
    return data
