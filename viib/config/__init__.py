"""Configuration package — settings + logging."""

from viib.config.settings import ConfigurationError, Settings, get_settings

__all__ = ["ConfigurationError", "Settings", "get_settings"]
