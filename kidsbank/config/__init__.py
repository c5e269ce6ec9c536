"""Configuration package."""

from kidsbank.config.settings import (
    AppSettings,
    CloudinarySettings,
    DatabaseSettings,
    FamilySettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "CloudinarySettings",
    "DatabaseSettings",
    "FamilySettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
