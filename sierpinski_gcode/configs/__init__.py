"""Print configuration loading and validation."""

from sierpinski_gcode.configs.loader import (
    DEFAULT_CONFIG_PATH,
    ConfigError,
    PrintParams,
    PyramidConfig,
    load_config,
    load_print_params,
    parse_config,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ConfigError",
    "PrintParams",
    "PyramidConfig",
    "load_config",
    "load_print_params",
    "parse_config",
]
