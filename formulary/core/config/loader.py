"""
Formula loader — reads a formula file into the Formula model.

Formulas arrive as structured YAML records (the parsed form of a
recipe). This module reads YAML, validates it against the Pydantic
schema and returns an immutable Formula.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from formulary.core.models.formula import Formula

logger = logging.getLogger(__name__)

FORMULA_SUFFIXES = (".yml", ".yaml")


class ConfigError(Exception):
    """Raised when a formula or settings file is invalid or missing."""


def load_formula(path: Path) -> Formula:
    """Load and validate a formula file.

    The YAML may wrap everything under a ``formula`` key or be flat.

    Args:
        path: Path to the formula YAML.

    Returns:
        Validated, immutable Formula.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if not path.is_file():
        raise ConfigError(f"Formula file not found: {path}")

    logger.debug("Loading formula from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    if isinstance(data.get("formula"), dict):
        data = data["formula"]

    return parse_formula(data, origin=str(path))


def parse_formula(data: dict, origin: str = "<formula>") -> Formula:
    """Validate an already-parsed formula record.

    Raises:
        ConfigError: If the record does not satisfy the schema.
    """
    try:
        formula = Formula.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid formula in {origin}: {e}") from e

    logger.info(
        "Loaded formula '%s' (%s, %d steps, %d artifacts)",
        formula.name,
        formula.source.strategy,
        len(formula.install_steps),
        len(formula.artifacts),
    )
    return formula


def looks_like_formula_file(ref: str) -> bool:
    """Whether a CLI argument names a formula file rather than an installed name."""
    return ref.endswith(FORMULA_SUFFIXES) or "/" in ref
