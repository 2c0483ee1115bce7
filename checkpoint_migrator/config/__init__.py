"""Configuration loading and validation."""

from checkpoint_migrator.config.defaults import DEFAULT_CONFIG
from checkpoint_migrator.config.loader import load_config, load_config_from_dict
from checkpoint_migrator.config.schema import MigratorConfig

__all__ = ["DEFAULT_CONFIG", "MigratorConfig", "load_config", "load_config_from_dict"]
