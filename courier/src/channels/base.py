"""
Channel sender interface and registry.

Each delivery channel is a ChannelSender; the queue consumer looks the
sender up by the item's channel and calls ``send``. A send either returns
(delivered or intentionally suppressed) or raises.
"""

from abc import ABC, abstractmethod
from typing import Dict, List

from sqlalchemy.orm import Session

from courier.src.channels.exceptions import ChannelConfigurationError
from courier.src.models.notification import Notification, NotificationChannel


class ChannelSender(ABC):
    """Delivers a notification over one channel."""

    channel: NotificationChannel

    @abstractmethod
    def send(self, db: Session, notification: Notification) -> None:
        """
        Deliver the notification.

        Args:
            db: Session owned by the calling worker
            notification: Notification to deliver

        Raises:
            DeliveryError: Delivery failed; ``retryable`` decides the outcome
        """


class ChannelRegistry:
    """Lookup table of senders keyed by channel."""

    def __init__(self):
        self._senders: Dict[NotificationChannel, ChannelSender] = {}

    def register(self, sender: ChannelSender) -> None:
        self._senders[NotificationChannel(sender.channel)] = sender

    def get(self, channel: NotificationChannel) -> ChannelSender:
        try:
            return self._senders[NotificationChannel(channel)]
        except KeyError:
            raise ChannelConfigurationError(
                f"No sender registered for channel '{NotificationChannel(channel).value}'",
                NotificationChannel(channel).value,
            )

    def dispatch(self, db: Session, notification: Notification, channel: NotificationChannel) -> None:
        self.get(channel).send(db, notification)

    @property
    def channels(self) -> List[NotificationChannel]:
        return list(self._senders.keys())
