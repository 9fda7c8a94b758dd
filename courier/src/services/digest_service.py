"""
Digest aggregator: periodic summary emails of unread notifications.

A digest run collects, per recipient, the unread email-eligible
notifications of the period that have not been part of a digest yet. Only
recipients with at least ``min_notifications`` such notifications get an
email; afterwards every included notification carries
``metadata.digest_sent = true`` so it is never summarized twice.
"""

import enum
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from courier.src.models.notification import Notification, NotificationChannel
from courier.src.services.email_notification_service import DigestEmailData, EmailNotificationService
from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.logging_config import get_logger


logger = get_logger("services")


class DigestPeriod(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def window(self) -> timedelta:
        return timedelta(days=1) if self is DigestPeriod.DAILY else timedelta(days=7)


@dataclass
class DigestRunResult:
    """Summary of one digest run."""
    period: str
    recipients: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    notifications_marked: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


class DigestService:
    """
    Service that builds and sends digest emails.

    Args:
        db: SQLAlchemy database session
        email_service: Sends the rendered digest
        clock: Time source for the period cutoff
        min_notifications: Minimum notifications per recipient (default 3)
        send_delay_ms: Pause between consecutive digest emails
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        db: Session,
        email_service: EmailNotificationService,
        clock: Optional[Clock] = None,
        min_notifications: int = 3,
        send_delay_ms: int = 100,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.email_service = email_service
        self.clock = clock or SystemClock()
        self.min_notifications = min_notifications
        self.send_delay_ms = send_delay_ms
        self.sleep = sleep

    def get_pending_digests(self, period: DigestPeriod) -> List[DigestEmailData]:
        """
        Collect digest candidates for the period.

        Args:
            period: DigestPeriod (daily = last 24h, weekly = last 7 days)

        Returns:
            One DigestEmailData per recipient meeting the threshold, ordered
            by recipient id; notifications oldest first
        """
        period = DigestPeriod(period)
        cutoff = self.clock.now() - period.window

        candidates = (
            self.db.query(Notification)
            .filter(
                Notification.created_at >= cutoff,
                Notification.read_at.is_(None),
            )
            .order_by(Notification.recipient_id.asc(), Notification.created_at.asc(), Notification.id.asc())
            .all()
        )

        # Channel and metadata filters are applied here; JSON operators differ per backend
        grouped: Dict[str, List[Notification]] = {}
        for notification in candidates:
            if not notification.has_channel(NotificationChannel.EMAIL):
                continue
            if notification.digest_sent:
                continue
            grouped.setdefault(notification.recipient_id, []).append(notification)

        return [
            DigestEmailData(recipient_id=recipient_id, notifications=notifications, period=period.value)
            for recipient_id, notifications in grouped.items()
            if len(notifications) >= self.min_notifications
        ]

    def process_pending_digests(self, period: DigestPeriod) -> DigestRunResult:
        """
        Send all pending digests for the period.

        Recipients are processed sequentially with a short delay between
        emails; a failure for one recipient is logged and the run continues.

        Returns:
            DigestRunResult
        """
        period = DigestPeriod(period)
        digests = self.get_pending_digests(period)
        result = DigestRunResult(period=period.value, recipients=len(digests))

        for index, digest in enumerate(digests):
            if index > 0 and self.send_delay_ms > 0:
                self.sleep(self.send_delay_ms / 1000.0)

            try:
                sent = self.email_service.send_digest_email(digest)
            except Exception as e:
                self.db.rollback()
                result.failed += 1
                result.errors[digest.recipient_id] = str(e)
                logger.error(
                    f"Failed to send digest email: {e}",
                    extra={"recipient_id": digest.recipient_id, "period": period.value},
                )
                continue

            if not sent:
                result.skipped += 1
                continue

            for notification in digest.notifications:
                notification.set_metadata(digest_sent=True)
            self.db.commit()
            result.sent += 1
            result.notifications_marked += len(digest.notifications)

        logger.info(
            "Digest run finished",
            extra={
                "period": period.value,
                "recipients": result.recipients,
                "sent": result.sent,
                "skipped": result.skipped,
                "failed": result.failed,
            },
        )
        return result

    def trigger_digest(self, period: DigestPeriod) -> DigestRunResult:
        """Run a digest outside of its schedule (manual or admin trigger)."""
        logger.info("Digest triggered manually", extra={"period": DigestPeriod(period).value})
        return self.process_pending_digests(period)
