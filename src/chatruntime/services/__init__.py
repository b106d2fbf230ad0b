"""Service layer: persisted settings."""

from .settings import ChatConfiguration, Settings, SettingsStore

__all__ = ["ChatConfiguration", "Settings", "SettingsStore"]
