"""
Configuration module for Courier.

Provides centralized, environment-driven settings for queue processing,
channel transports and digest scheduling.
"""

from courier.src.config.settings import AppSettings, get_settings

__all__ = [
    "AppSettings",
    "get_settings",
]
