"""
Utility modules for the Courier notification pipeline.

This package contains shared utilities used across the application:
- clock: Injectable time sources
- logging_config: Structured logging
- mailer: Pooled SMTP transport
- email_templates: Jinja2 email rendering
- scheduler: Interval and cron job scheduling
- websocket: Real-time connection manager
"""

from courier.src.utils.clock import Clock, ManualClock, SystemClock
from courier.src.utils.logging_config import get_logger, init_logging

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "get_logger",
    "init_logging",
]
