"""
Delivery channels.

Each channel implements ChannelSender and is looked up through a
ChannelRegistry by the queue consumer. Sender implementations live in the
in_app, email, push and sms modules.
"""

from courier.src.channels.base import ChannelRegistry, ChannelSender
from courier.src.channels.exceptions import (
    ChannelConfigurationError,
    ChannelNotImplementedError,
    DeliveryError,
    PermanentDeliveryError,
    PushDeliveryError,
    PushGoneError,
    TemplateNotFoundError,
)

__all__ = [
    "ChannelRegistry",
    "ChannelSender",
    "DeliveryError",
    "PermanentDeliveryError",
    "ChannelConfigurationError",
    "ChannelNotImplementedError",
    "TemplateNotFoundError",
    "PushDeliveryError",
    "PushGoneError",
]
