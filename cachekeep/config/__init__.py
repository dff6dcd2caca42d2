"""Configuration module for cachekeep."""

from cachekeep.config.loader import get_config_path, load_config, save_config
from cachekeep.config.schema import Config

__all__ = ["Config", "load_config", "save_config", "get_config_path"]
