"""
In-app channel: publishes the notification to the recipient's real-time room.
"""

from typing import Any, Dict, Optional, Protocol

from sqlalchemy.orm import Session

from courier.src.channels.base import ChannelSender
from courier.src.channels.exceptions import ChannelConfigurationError
from courier.src.models.notification import Notification, NotificationChannel
from courier.src.utils.logging_config import get_logger


logger = get_logger("channels")


NOTIFICATION_EVENT = "notification"


class RealtimeTransport(Protocol):
    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        ...


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class InAppChannelSender(ChannelSender):
    """Fire-and-forget publish; succeeds as soon as the message is handed off."""

    channel = NotificationChannel.IN_APP

    def __init__(self, transport: Optional[RealtimeTransport] = None):
        self.transport = transport

    def send(self, db: Session, notification: Notification) -> None:
        if self.transport is None:
            raise ChannelConfigurationError("real-time channel not available", self.channel.value)

        self.transport.publish(user_room(notification.recipient_id), NOTIFICATION_EVENT, notification.to_envelope())
        logger.debug(
            "In-app notification published",
            extra={"notification_id": notification.id, "recipient_id": notification.recipient_id},
        )
