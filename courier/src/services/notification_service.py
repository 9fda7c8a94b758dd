"""
Notification service for creating notifications and managing their lifecycle.

Provides business logic for:
- Creating a notification and enqueueing one delivery item per channel
- Listing notifications and unread counts for a recipient
- Delivered/read acknowledgements
- Re-queueing permanently failed deliveries
- Purging old notifications
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from courier.src.models.delivery_item import DeliveryItem, DeliveryStatus
from courier.src.models.notification import (
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    PRIORITY_RANK,
)
from courier.src.services.exceptions import NotFoundError, ValidationError
from courier.src.services.retry_policy import RetryPolicy
from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.logging_config import get_logger


logger = get_logger("services")


class NotificationService:
    """
    Service for notification creation and lifecycle management.

    Creating a notification is the only way delivery items are produced;
    the queue consumer takes it from there.
    """

    def __init__(
        self,
        db: Session,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize notification service.

        Args:
            db: SQLAlchemy database session
            retry_policy: Supplies the per-item attempt budget
            clock: Time source (defaults to the system clock)
        """
        self.db = db
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or SystemClock()

    # ========================================================================
    # Creation
    # ========================================================================

    def create_notification(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        message: str,
        channels: Sequence[NotificationChannel],
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        action_url: Optional[str] = None,
        action_text: Optional[str] = None,
        organization_id: Optional[str] = None,
        team_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> Notification:
        """
        Create a notification and enqueue one delivery item per channel.

        Args:
            recipient_id: Recipient user id
            type: NotificationType
            title: Short title
            message: Body text
            channels: Channels to deliver on (duplicates are ignored)
            priority: NotificationPriority (also orders the queue)
            action_url / action_text: Optional call to action
            organization_id / team_id: Optional tenant scoping
            metadata: Optional JSON bag
            scheduled_for: Earliest delivery time (default now)

        Returns:
            Created Notification instance

        Raises:
            ValidationError: If recipient, title or channels are missing, or
                a type/priority/channel value is unknown
        """
        if not recipient_id:
            raise ValidationError("recipient_id is required", field="recipient_id")
        if not title:
            raise ValidationError("title is required", field="title")

        try:
            notification_type = NotificationType(type)
            notification_priority = NotificationPriority(priority)
            unique_channels: List[NotificationChannel] = []
            for channel in channels or []:
                channel = NotificationChannel(channel)
                if channel not in unique_channels:
                    unique_channels.append(channel)
        except ValueError as e:
            raise ValidationError(str(e))

        if not unique_channels:
            raise ValidationError("At least one channel is required", field="channels")

        now = self.clock.now()
        max_attempts = self.retry_policy.max_attempts_for(notification_priority, notification_type)

        notification = Notification(
            recipient_id=recipient_id,
            organization_id=organization_id,
            team_id=team_id,
            type=notification_type,
            priority=notification_priority,
            title=title[:255],
            message=message,
            action_url=action_url,
            action_text=action_text,
            channels=[c.value for c in unique_channels],
            status=NotificationStatus.PENDING,
            max_retries=max_attempts,
            metadata_json=dict(metadata) if metadata else None,
            created_at=now,
        )
        self.db.add(notification)
        self.db.flush()

        for channel in unique_channels:
            self.db.add(DeliveryItem(
                notification_id=notification.id,
                channel=channel,
                priority=PRIORITY_RANK[notification_priority],
                status=DeliveryStatus.PENDING,
                scheduled_for=scheduled_for or now,
                max_attempts=max_attempts,
                created_at=now,
            ))

        self.db.commit()
        self.db.refresh(notification)
        logger.info(
            "Created notification",
            extra={
                "notification_id": notification.id,
                "type": notification_type.value,
                "recipient_id": recipient_id,
                "channels": notification.channels,
            },
        )
        return notification

    # ========================================================================
    # Queries
    # ========================================================================

    def get_notification(self, notification_id: int) -> Notification:
        """
        Get a notification by id.

        Raises:
            NotFoundError: If the notification does not exist
        """
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError("Notification", notification_id)
        return notification

    def list_for_user(
        self,
        recipient_id: str,
        unread_only: bool = False,
        type: Optional[NotificationType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Notification], int]:
        """
        List a recipient's notifications, newest first.

        Returns:
            Tuple of (notifications page, total matching count)
        """
        query = self.db.query(Notification).filter(Notification.recipient_id == recipient_id)
        if unread_only:
            query = query.filter(Notification.read_at.is_(None))
        if type is not None:
            query = query.filter(Notification.type == NotificationType(type))

        total = query.count()
        notifications = (
            query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return notifications, total

    def get_unread_count(self, recipient_id: str) -> int:
        return (
            self.db.query(func.count(Notification.id))
            .filter(
                Notification.recipient_id == recipient_id,
                Notification.read_at.is_(None),
            )
            .scalar()
        )

    # ========================================================================
    # Acknowledgements
    # ========================================================================

    def mark_delivered(self, notification_id: int) -> Notification:
        """Record that a client received the notification (never moves a read notification back)."""
        notification = self.get_notification(notification_id)
        notification.mark_delivered(self.clock.now())
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def mark_as_read(self, notification_id: int, recipient_id: Optional[str] = None) -> Notification:
        """
        Mark a notification as read (idempotent).

        Args:
            notification_id: Notification id
            recipient_id: When given, the notification must belong to this user

        Raises:
            NotFoundError: If not found or owned by another recipient
        """
        notification = self.get_notification(notification_id)
        if recipient_id is not None and notification.recipient_id != recipient_id:
            raise NotFoundError("Notification", notification_id)

        if notification.read_at is None:
            notification.mark_read(self.clock.now())
            self.db.commit()
            self.db.refresh(notification)

        return notification

    def mark_all_as_read(self, recipient_id: str) -> int:
        """
        Mark all unread notifications as read for a recipient.

        Returns:
            Number of notifications that were marked as read
        """
        now = self.clock.now()
        updated = (
            self.db.query(Notification)
            .filter(
                Notification.recipient_id == recipient_id,
                Notification.read_at.is_(None),
            )
            .update(
                {"read_at": now, "status": NotificationStatus.READ},
                synchronize_session="fetch",
            )
        )
        self.db.commit()
        return updated

    # ========================================================================
    # Maintenance
    # ========================================================================

    def requeue_failed(self, notification_id: int) -> int:
        """
        Give permanently failed delivery items of a notification a fresh budget.

        Items are reset to pending with attempt_count 0, scheduled for now.

        Returns:
            Number of items re-queued
        """
        notification = self.get_notification(notification_id)
        now = self.clock.now()
        max_attempts = self.retry_policy.max_attempts_for(notification.priority, notification.type)

        items = (
            self.db.query(DeliveryItem)
            .filter(
                DeliveryItem.notification_id == notification_id,
                DeliveryItem.status == DeliveryStatus.FAILED,
            )
            .all()
        )
        requeued = 0
        for item in items:
            if not item.is_terminal:
                continue
            item.status = DeliveryStatus.PENDING
            item.attempt_count = 0
            item.max_attempts = max_attempts
            item.scheduled_for = now
            item.next_attempt_at = None
            item.started_at = None
            item.completed_at = None
            item.error_message = None
            requeued += 1

        if requeued:
            notification.next_retry_at = now
            self.db.commit()
            logger.info(
                "Re-queued failed deliveries",
                extra={"notification_id": notification_id, "items": requeued},
            )
        return requeued

    def delete_old_notifications(self, days: int = 30) -> int:
        """
        Delete notifications older than the specified number of days.

        Their delivery items survive with a NULL parent and are failed as
        orphans if still pending.

        Returns:
            Number of notifications deleted
        """
        cutoff = self.clock.now() - timedelta(days=days)
        count = (
            self.db.query(Notification)
            .filter(Notification.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()

        if count > 0:
            logger.info(f"Deleted {count} old notifications (>{days} days)")

        return count
