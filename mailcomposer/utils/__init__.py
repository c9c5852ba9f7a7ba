"""Utility modules for the mailcomposer package."""

from .settings import Settings, MailSettings, get_settings, utc_now

__all__ = [
    "Settings",
    "MailSettings",
    "get_settings",
    "utc_now",
]
