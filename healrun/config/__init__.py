"""Configuration module for healrun."""

from healrun.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
