"""Configuration models and the shared config store."""

from .settings import Settings, TemperaturePreset, get_settings
from .store import ConfigStore

__all__ = ["ConfigStore", "Settings", "TemperaturePreset", "get_settings"]
