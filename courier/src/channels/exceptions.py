"""
Delivery exceptions raised by channel senders.

The queue consumer decides between retry and permanent failure from the
``retryable`` flag; anything that is not a DeliveryError is treated as a
transient failure.
"""

from typing import Optional


class DeliveryError(Exception):
    """Base exception for channel delivery failures (retryable by default)."""

    retryable = True

    def __init__(self, message: str, channel: Optional[str] = None):
        self.message = message
        self.channel = channel
        super().__init__(message)


class PermanentDeliveryError(DeliveryError):
    """Raised when retrying cannot succeed (bad recipient, missing template, ...)."""

    retryable = False


class ChannelConfigurationError(DeliveryError):
    """Raised when a channel's backend is not configured (no transport, no keys)."""


class ChannelNotImplementedError(DeliveryError):
    """Raised by channels that have no delivery backend yet."""


class TemplateNotFoundError(PermanentDeliveryError):
    """Raised when a notification type has no email template."""

    def __init__(self, notification_type: str):
        self.notification_type = notification_type
        super().__init__(f"No email template for notification type '{notification_type}'", "email")


class PushDeliveryError(DeliveryError):
    """Raised when push delivery fails."""


class PushGoneError(Exception):
    """Raised when push service returns 404/410 (subscription invalid)."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        super().__init__(f"Push subscription gone: {endpoint[:60]}")
