"""
Gantz validation module.

This module provides configuration validation and schema enforcement.
"""

from gantz.errors import ConfigError
from gantz.validation.config import Config, GantzConfig

__all__ = ["Config", "ConfigError", "GantzConfig"]
