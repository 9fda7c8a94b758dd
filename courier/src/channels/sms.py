"""
SMS channel: no provider is wired up, so every dispatch fails.

Whether that failure is retried is decided by the queue consumer
(fail_fast_unimplemented_channels).
"""

from sqlalchemy.orm import Session

from courier.src.channels.base import ChannelSender
from courier.src.channels.exceptions import ChannelNotImplementedError
from courier.src.models.notification import Notification, NotificationChannel


class SmsChannelSender(ChannelSender):
    channel = NotificationChannel.SMS

    def send(self, db: Session, notification: Notification) -> None:
        raise ChannelNotImplementedError("SMS notifications not implemented", self.channel.value)
