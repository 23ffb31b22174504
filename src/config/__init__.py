"""Configuration module for the e-filing workflow service."""

from .database import DatabaseSettings, get_database_settings
from .settings import (
    AuthoritySettings,
    PollingSettings,
    ResilienceSettings,
    Settings,
    VerificationSettings,
    get_settings,
)

__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "AuthoritySettings",
    "PollingSettings",
    "ResilienceSettings",
    "Settings",
    "VerificationSettings",
    "get_settings",
]
