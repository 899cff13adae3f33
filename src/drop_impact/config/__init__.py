"""Configuration loading and validation utilities."""

from .loader import ConfigError, dump_run_config, load_run_config, normalize_config_dict
from .models import RunConfig, format_validation_error

__all__ = [
    "ConfigError",
    "RunConfig",
    "dump_run_config",
    "format_validation_error",
    "load_run_config",
    "normalize_config_dict",
]
