"""
DeliveryItem model: one delivery attempt stream per (notification, channel).

Items are drained by the queue consumer in priority/time order. A failed
item with attempts left always carries next_attempt_at; once the attempt
budget is spent the item is terminal and next_attempt_at is cleared.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, DateTime, Text, ForeignKey, Enum, Index
from sqlalchemy.orm import relationship

from courier.src.models import Base
from courier.src.models.notification import NotificationChannel


class DeliveryStatus(str, enum.Enum):
    """
    Delivery item status enumeration.

    - PENDING: Waiting for scheduled_for
    - PROCESSING: Claimed by a consumer tick
    - COMPLETED: Delivered (or intentionally suppressed)
    - FAILED: Attempt failed; retried while attempt_count < max_attempts
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DeliveryItem(Base):
    """
    Queue entry for delivering a notification over one channel.

    Attributes:
        notification_id: Parent notification (NULL once the parent is deleted)
        channel: NotificationChannel this item targets
        priority: Integer rank inherited from the notification (higher first)
        status: DeliveryStatus
        scheduled_for: Earliest first attempt
        started_at: Start of the latest attempt
        completed_at: Completion time
        attempt_count: Attempts claimed so far
        max_attempts: Attempt budget (default 3)
        next_attempt_at: Earliest retry time for FAILED items
        error_message: Last failure
    """

    __tablename__ = "notification_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)

    notification_id = Column(
        Integer,
        ForeignKey("notifications.id", name="fk_queue_notification_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    channel = Column(Enum(NotificationChannel, native_enum=False), nullable=False)
    priority = Column(Integer, default=0, nullable=False)

    status = Column(
        Enum(DeliveryStatus, native_enum=False),
        default=DeliveryStatus.PENDING,
        nullable=False,
    )

    scheduled_for = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    attempt_count = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    next_attempt_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    notification = relationship("Notification", back_populates="delivery_items")

    __table_args__ = (
        Index("ix_notification_queue_due", "status", "priority", "scheduled_for"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeliveryItem(id={self.id}, notification_id={self.notification_id}, "
            f"channel='{self.channel}', status='{self.status}', "
            f"attempts={self.attempt_count}/{self.max_attempts})>"
        )

    @property
    def is_terminal(self) -> bool:
        if self.status == DeliveryStatus.COMPLETED:
            return True
        return self.status == DeliveryStatus.FAILED and self.attempt_count >= self.max_attempts

    @property
    def can_retry(self) -> bool:
        return self.status == DeliveryStatus.FAILED and self.attempt_count < self.max_attempts

    def complete(self, now: datetime) -> None:
        self.status = DeliveryStatus.COMPLETED
        self.completed_at = now
        self.next_attempt_at = None
        self.error_message = None

    def fail(self, error: str, now: datetime, next_attempt_at: Optional[datetime] = None) -> None:
        """
        Mark the current attempt as failed.

        Args:
            error: Error message
            now: Failure time
            next_attempt_at: Retry time, or None for a permanent failure
        """
        self.status = DeliveryStatus.FAILED
        self.error_message = error
        self.next_attempt_at = next_attempt_at
        if next_attempt_at is None:
            # Permanent: close the budget at the attempts actually made
            if self.attempt_count < self.max_attempts:
                self.max_attempts = self.attempt_count
            self.completed_at = now
