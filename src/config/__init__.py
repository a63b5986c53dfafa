"""Configuration module for the access-control core."""

from .database import DatabaseSettings, get_database_settings
from .settings import AccessControlSettings, get_settings

__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "AccessControlSettings",
    "get_settings",
]
