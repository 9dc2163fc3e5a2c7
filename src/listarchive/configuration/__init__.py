"""Configuration loading utilities for listarchive."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    ArchiveSettings,
    ImapSettings,
    Settings,
    load_settings,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ArchiveSettings",
    "ImapSettings",
    "Settings",
    "load_settings",
    "save_settings",
]
