"""Configuration package."""

from billing_sync.config.settings import Settings, settings

__all__ = [
    "Settings",
    "settings",
]
