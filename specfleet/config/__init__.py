"""Configuration module for SpecFleet."""

from .settings import settings, Settings, get_logging_config, setup_logging

__all__ = ["settings", "Settings", "get_logging_config", "setup_logging"]
