"""Configuration loading and validation."""
from .load import DEFAULT_CONFIG, load_config, validate_config

__all__ = ["DEFAULT_CONFIG", "load_config", "validate_config"]
