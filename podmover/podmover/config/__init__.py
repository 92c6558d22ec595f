"""Settings loading and validation for podmover."""

from podmover.config.loader import load_settings
from podmover.config.settings import MoverSettings
from podmover.config.validator import validate_settings

__all__ = ["load_settings", "MoverSettings", "validate_settings"]
