"""
Service layer for business logic.

Channel-facing services (email, push, delivery queue, digest) are imported
from their own modules; this package exports the core services and
exceptions.
"""

from courier.src.services.exceptions import (
    ServiceError,
    NotFoundError,
    ValidationError,
)
from courier.src.services.retry_policy import RetryPolicy
from courier.src.services.notification_service import NotificationService
from courier.src.services.presence_service import PresenceService
from courier.src.services.push_subscription_service import PushSubscriptionService

__all__ = [
    "ServiceError",
    "NotFoundError",
    "ValidationError",
    "RetryPolicy",
    "NotificationService",
    "PresenceService",
    "PushSubscriptionService",
]
