"""
Configuration Loader
~~~~~~~~~~~~~~~~~~~~

Reads a migrator YAML file and layers it over ``DEFAULT_CONFIG``.
Sections merge key by key, so a file that only sets ``storage.pool``
keeps every other storage default. Lists (argv templates, exporters)
are replaced whole.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from checkpoint_migrator.config.defaults import DEFAULT_CONFIG
from checkpoint_migrator.config.schema import MigratorConfig
from checkpoint_migrator.exceptions import (
    ConfigFileNotFoundError,
    ConfigValidationError,
)

__all__ = ["load_config", "load_config_from_dict"]

logger = logging.getLogger(__name__)


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _describe(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        where = ".".join(str(part) for part in error["loc"]) or "<root>"
        problems.append(f"{where}: {error['msg']}")
    return "; ".join(problems)


def load_config(path: str) -> MigratorConfig:
    """
    Load the migrator configuration at ``path``.

    An empty file yields the defaults.

    Raises:
        ConfigFileNotFoundError: If ``path`` is not a file.
        ConfigValidationError: If the YAML is unreadable, is not a
            mapping, or sets invalid values.
    """
    source = Path(path)
    if not source.is_file():
        raise ConfigFileNotFoundError(f"Configuration file not found: {path}")

    try:
        overrides = yaml.safe_load(source.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"{path} is not valid YAML: {exc}") from exc

    if overrides is None:
        overrides = {}
    if not isinstance(overrides, dict):
        raise ConfigValidationError(
            f"Configuration file {path} must contain a mapping at the top level"
        )
    logger.debug("Loaded configuration overrides from %s", path)
    return load_config_from_dict(overrides)


def load_config_from_dict(data: dict[str, Any]) -> MigratorConfig:
    """Validate ``data`` layered over the reference deployment defaults."""
    try:
        return MigratorConfig(**_deep_merge(DEFAULT_CONFIG, data))
    except ValidationError as exc:
        raise ConfigValidationError(
            f"Invalid migrator configuration: {_describe(exc)}",
            details={"errors": len(exc.errors())},
        ) from exc
