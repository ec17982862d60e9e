"""Wastewarden core module.

Shared components used across all services:
- Configuration management
- Clock abstraction
"""

from wastewarden.core.clock import Clock, utc_now
from wastewarden.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    GeoSettings,
    LifecycleSettings,
    NotificationSettings,
    RateLimitSettings,
    Settings,
    SweeperSettings,
)
from wastewarden.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "Clock",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "GeoSettings",
    "LifecycleSettings",
    "NotificationSettings",
    "RateLimitSettings",
    "Settings",
    "SweeperSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
    "utc_now",
]
