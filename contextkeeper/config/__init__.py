"""Configuration module for contextkeeper."""

from contextkeeper.config.loader import get_config_path, load_config
from contextkeeper.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
