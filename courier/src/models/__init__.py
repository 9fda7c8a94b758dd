"""
SQLAlchemy models for the Courier notification pipeline.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# All models inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
from courier.src.models.notification import (  # noqa: E402
    Notification,
    NotificationType,
    NotificationPriority,
    NotificationChannel,
    NotificationStatus,
    PRIORITY_RANK,
)
from courier.src.models.delivery_item import DeliveryItem, DeliveryStatus  # noqa: E402
from courier.src.models.presence import UserPresence, PresenceStatus  # noqa: E402
from courier.src.models.push_subscription import PushSubscription  # noqa: E402

__all__ = [
    "Base",
    "Notification",
    "NotificationType",
    "NotificationPriority",
    "NotificationChannel",
    "NotificationStatus",
    "PRIORITY_RANK",
    "DeliveryItem",
    "DeliveryStatus",
    "UserPresence",
    "PresenceStatus",
    "PushSubscription",
]
