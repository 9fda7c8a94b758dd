"""
Notification model: a logical message addressed to one recipient.

A notification is created by feature code (chat, scheduling, medical,
payments, ...) and fanned out into one DeliveryItem per requested channel.
Its status summarizes delivery across those channels.

Status lifecycle:
    pending -> sent -> delivered -> read
    pending/failed -> failed -> sent (retry loop)

sent_at, delivered_at and read_at are each stamped at most once.
"""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, Integer, String, DateTime, Text, Enum, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from courier.src.models import Base


class NotificationType(str, enum.Enum):
    """Closed set of notification types; each one has exactly one email template."""
    MESSAGE_RECEIVED = "message_received"
    MENTION = "mention"
    TRAINING_SCHEDULED = "training_scheduled"
    TRAINING_UPDATED = "training_updated"
    TRAINING_CANCELLED = "training_cancelled"
    MEDICAL_APPOINTMENT = "medical_appointment"
    INJURY_UPDATE = "injury_update"
    EQUIPMENT_FITTING = "equipment_fitting"
    PAYMENT_DUE = "payment_due"
    PAYMENT_RECEIVED = "payment_received"
    TEAM_ANNOUNCEMENT = "team_announcement"
    SCHEDULE_CHANGE = "schedule_change"
    WELLNESS_REMINDER = "wellness_reminder"
    PERFORMANCE_REPORT = "performance_report"
    CALENDAR_REMINDER = "calendar_reminder"
    SYSTEM_ALERT = "system_alert"
    REACTION_ADDED = "reaction_added"
    TASK_ASSIGNED = "task_assigned"
    DOCUMENT_SHARED = "document_shared"
    FEEDBACK_RECEIVED = "feedback_received"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Integer rank copied onto queue items; higher drains first
PRIORITY_RANK = {
    NotificationPriority.LOW: 0,
    NotificationPriority.MEDIUM: 1,
    NotificationPriority.HIGH: 2,
    NotificationPriority.URGENT: 3,
}


class NotificationChannel(str, enum.Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class NotificationStatus(str, enum.Enum):
    """
    Notification status enumeration.

    - PENDING: Created, no channel has succeeded yet
    - SENT: At least one channel delivered successfully
    - DELIVERED: Client acknowledged receipt
    - READ: Recipient opened the notification
    - FAILED: Latest channel attempt failed (may still be retried)
    """
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


_STATUS_ORDER = {
    NotificationStatus.PENDING: 0,
    NotificationStatus.FAILED: 0,
    NotificationStatus.SENT: 1,
    NotificationStatus.DELIVERED: 2,
    NotificationStatus.READ: 3,
}


class Notification(Base):
    """
    Notification addressed to a single recipient.

    Attributes:
        recipient_id: User id in the user service
        organization_id / team_id: Optional tenant scoping
        type: NotificationType
        priority: NotificationPriority
        title / message: Content shown in every channel
        action_url / action_text: Optional call to action
        channels: Channels chosen at creation (list of NotificationChannel values)
        status: NotificationStatus summary across channels
        retry_count / max_retries / next_retry_at: Mirror of the most recent
            failing delivery item
        error_message: Last delivery error
        metadata_json: Free-form bag ("metadata" column); carries digest_sent

    Relationships:
        delivery_items: Queue items, one per channel
    """

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)

    recipient_id = Column(String(64), nullable=False, index=True)
    organization_id = Column(String(64), nullable=True)
    team_id = Column(String(64), nullable=True)

    type = Column(Enum(NotificationType, native_enum=False), nullable=False)
    priority = Column(
        Enum(NotificationPriority, native_enum=False),
        default=NotificationPriority.MEDIUM,
        nullable=False,
    )

    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(String(500), nullable=True)
    action_text = Column(String(100), nullable=True)

    channels = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=False, default=list)

    status = Column(
        Enum(NotificationStatus, native_enum=False),
        default=NotificationStatus.PENDING,
        nullable=False,
        index=True,
    )

    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSONB().with_variant(JSON(), "sqlite"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    delivery_items = relationship(
        "DeliveryItem",
        back_populates="notification",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "ix_notifications_recipient_unread",
            "recipient_id",
            postgresql_where=(read_at.is_(None)),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, recipient='{self.recipient_id}', "
            f"type='{self.type}', status='{self.status}')>"
        )

    @property
    def channel_list(self) -> List[NotificationChannel]:
        return [NotificationChannel(c) for c in (self.channels or [])]

    def has_channel(self, channel: NotificationChannel) -> bool:
        return NotificationChannel(channel).value in (self.channels or [])

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        return dict(self.metadata_json or {})

    @property
    def digest_sent(self) -> bool:
        return bool((self.metadata_json or {}).get("digest_sent"))

    def set_metadata(self, **values: Any) -> None:
        """Merge values into the metadata bag (reassigned so the change is flushed)."""
        merged = self.metadata_dict
        merged.update(values)
        self.metadata_json = merged

    def _can_advance_to(self, status: NotificationStatus) -> bool:
        return _STATUS_ORDER[status] >= _STATUS_ORDER[self.status]

    def mark_sent(self, now: datetime) -> None:
        """
        Record a successful channel delivery.

        Only moves pending/failed notifications forward; a notification that
        is already sent, delivered or read keeps its state and timestamps.
        """
        if self.status in (NotificationStatus.PENDING, NotificationStatus.FAILED):
            self.status = NotificationStatus.SENT
            self.error_message = None
            self.next_retry_at = None
        if self.sent_at is None:
            self.sent_at = now

    def mark_failed(
        self,
        error: str,
        retry_count: int = 0,
        next_retry_at: Optional[datetime] = None,
    ) -> None:
        """
        Record a failed channel attempt.

        The status only changes while no channel has succeeded; the error is
        recorded either way.
        """
        self.error_message = error
        self.retry_count = max(self.retry_count or 0, retry_count)
        if self.status in (NotificationStatus.PENDING, NotificationStatus.FAILED):
            self.status = NotificationStatus.FAILED
            self.next_retry_at = next_retry_at

    def mark_delivered(self, now: datetime) -> None:
        if not self._can_advance_to(NotificationStatus.DELIVERED):
            return
        self.status = NotificationStatus.DELIVERED
        if self.sent_at is None:
            self.sent_at = now
        if self.delivered_at is None:
            self.delivered_at = now

    def mark_read(self, now: datetime) -> None:
        if self.read_at is None:
            self.read_at = now
        self.status = NotificationStatus.READ

    def to_envelope(self) -> Dict[str, Any]:
        """Payload published to real-time clients."""
        return {
            "id": self.id,
            "type": NotificationType(self.type).value,
            "title": self.title,
            "message": self.message,
            "priority": NotificationPriority(self.priority).value,
            "action_url": self.action_url,
            "action_text": self.action_text,
            "created_at": self.created_at.isoformat() + "Z" if self.created_at else None,
            "metadata": self.metadata_dict,
        }
