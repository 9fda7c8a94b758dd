"""
Delivery queue consumer.

Each tick selects due delivery items (priority desc, scheduled_for asc),
claims them one by one with a conditional UPDATE and dispatches the claimed
ones through the channel registry on a bounded worker pool. Every worker
uses its own session, so one item's failure never affects another.

Due predicate:
    status = pending AND scheduled_for <= now
    OR status = failed AND next_attempt_at <= now AND attempt_count < max_attempts
    OR status = processing AND started_at <= now - lease AND attempt_count < max_attempts

A claim only succeeds if the row still satisfies the due predicate when the
UPDATE runs; overlapping ticks therefore never dispatch the same attempt twice.
A claim whose worker died (process restart, failed bookkeeping) expires after
the lease and the item is claimed again; if its budget is already spent the
tick fails it instead.
"""

import enum
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from courier.src.channels.base import ChannelRegistry
from courier.src.channels.exceptions import ChannelNotImplementedError, DeliveryError
from courier.src.models.delivery_item import DeliveryItem, DeliveryStatus
from courier.src.models.notification import Notification
from courier.src.services.retry_policy import RetryPolicy
from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.logging_config import get_logger


logger = get_logger("services")


ORPHAN_ERROR = "orphan notification"
LEASE_EXPIRED_ERROR = "processing lease expired"


class DeliveryOutcome(str, enum.Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"  # claim lost to another consumer


@dataclass
class TickResult:
    """Summary of one processing tick."""
    selected: int = 0
    completed: int = 0
    retry_scheduled: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0

    @property
    def claimed(self) -> int:
        return self.completed + self.retry_scheduled + self.failed

    def record(self, outcome: DeliveryOutcome) -> None:
        if outcome == DeliveryOutcome.COMPLETED:
            self.completed += 1
        elif outcome == DeliveryOutcome.RETRY_SCHEDULED:
            self.retry_scheduled += 1
        elif outcome == DeliveryOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


def due_predicate(now: datetime, lease_cutoff: Optional[datetime] = None):
    """
    SQL expression matching items that may be attempted at ``now``.

    Items claimed at or before ``lease_cutoff`` and still processing are due
    again while they have attempts left.
    """
    clauses = [
        and_(
            DeliveryItem.status == DeliveryStatus.PENDING,
            DeliveryItem.scheduled_for <= now,
        ),
        and_(
            DeliveryItem.status == DeliveryStatus.FAILED,
            DeliveryItem.next_attempt_at.isnot(None),
            DeliveryItem.next_attempt_at <= now,
            DeliveryItem.attempt_count < DeliveryItem.max_attempts,
        ),
    ]
    if lease_cutoff is not None:
        clauses.append(and_(
            DeliveryItem.status == DeliveryStatus.PROCESSING,
            DeliveryItem.started_at <= lease_cutoff,
            DeliveryItem.attempt_count < DeliveryItem.max_attempts,
        ))
    return or_(*clauses)


class DeliveryQueueService:
    """
    Service that drains the notification queue.

    Args:
        session_factory: Callable returning a new Session (e.g. SessionLocal)
        channels: Registry of channel senders
        retry_policy: Backoff table and attempt budgets
        clock: Time source
        batch_size: Maximum items selected per tick
        dispatch_concurrency: Worker threads used to dispatch claimed items
        fail_fast_unimplemented: Treat ChannelNotImplementedError as permanent
        processing_lease_seconds: Age after which an unfinished claim expires

    Usage:
        >>> queue = DeliveryQueueService(SessionLocal, registry)
        >>> result = queue.tick()
        >>> result.completed
        3
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        channels: ChannelRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        batch_size: int = 10,
        dispatch_concurrency: int = 4,
        fail_fast_unimplemented: bool = False,
        processing_lease_seconds: int = 600,
    ):
        self.session_factory = session_factory
        self.channels = channels
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.batch_size = batch_size
        self.dispatch_concurrency = max(1, dispatch_concurrency)
        self.fail_fast_unimplemented = fail_fast_unimplemented
        self.processing_lease = timedelta(seconds=processing_lease_seconds)

    # ========================================================================
    # Selection and claiming
    # ========================================================================

    def _due(self, now: datetime):
        return due_predicate(now, now - self.processing_lease)

    def select_due_items(self, db: Session, now: datetime) -> List[int]:
        """Ids of up to batch_size due items, highest priority first."""
        rows = (
            db.query(DeliveryItem.id)
            .filter(self._due(now))
            .order_by(
                DeliveryItem.priority.desc(),
                DeliveryItem.scheduled_for.asc(),
                DeliveryItem.id.asc(),
            )
            .limit(self.batch_size)
            .all()
        )
        return [row.id for row in rows]

    def claim_item(self, db: Session, item_id: int, now: datetime) -> bool:
        """
        Atomically move a due item to processing.

        Returns:
            True if this caller now owns the attempt, False if the item was
            claimed (or changed) by someone else first
        """
        stmt = (
            update(DeliveryItem)
            .where(DeliveryItem.id == item_id, self._due(now))
            .values(
                status=DeliveryStatus.PROCESSING,
                attempt_count=DeliveryItem.attempt_count + 1,
                started_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        db.commit()
        return result.rowcount == 1

    def expire_stale_claims(self, db: Session, now: datetime) -> int:
        """
        Fail expired claims whose attempt budget is already spent.

        Expired claims with attempts left are not touched here; the due
        predicate hands them to the next claim.

        Returns:
            Number of items failed
        """
        cutoff = now - self.processing_lease
        stale = (
            db.query(DeliveryItem)
            .filter(
                DeliveryItem.status == DeliveryStatus.PROCESSING,
                DeliveryItem.started_at <= cutoff,
                DeliveryItem.attempt_count >= DeliveryItem.max_attempts,
            )
            .all()
        )

        expired = 0
        for item in stale:
            # Conditional like claim_item: a worker that finished meanwhile wins
            result = db.execute(
                update(DeliveryItem)
                .where(
                    DeliveryItem.id == item.id,
                    DeliveryItem.status == DeliveryStatus.PROCESSING,
                    DeliveryItem.started_at == item.started_at,
                )
                .values(
                    status=DeliveryStatus.FAILED,
                    error_message=LEASE_EXPIRED_ERROR,
                    next_attempt_at=None,
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            expired += 1
            if item.notification_id is not None:
                notification = db.get(Notification, item.notification_id)
                if notification is not None:
                    notification.mark_failed(LEASE_EXPIRED_ERROR, item.attempt_count)
            logger.error(
                "Delivery item claim expired with no attempts left",
                extra={"item_id": item.id, "channel": item.channel.value, "attempt": item.attempt_count},
            )
        db.commit()
        return expired

    # ========================================================================
    # Processing
    # ========================================================================

    def tick(self) -> TickResult:
        """
        Run one processing cycle.

        Returns:
            TickResult with per-outcome counts
        """
        now = self.clock.now()
        db = self.session_factory()
        try:
            expired = self.expire_stale_claims(db, now)
            item_ids = self.select_due_items(db, now)
        finally:
            db.close()

        result = TickResult(selected=len(item_ids), expired=expired)
        if not item_ids:
            return result

        if self.dispatch_concurrency == 1 or len(item_ids) == 1:
            outcomes = [self._process_isolated(item_id) for item_id in item_ids]
        else:
            workers = min(self.dispatch_concurrency, len(item_ids))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as pool:
                outcomes = list(pool.map(self._process_isolated, item_ids))

        for outcome in outcomes:
            result.record(outcome)

        logger.info(
            "Processed notification queue",
            extra={
                "selected": result.selected,
                "completed": result.completed,
                "retry_scheduled": result.retry_scheduled,
                "failed": result.failed,
                "skipped": result.skipped,
                "expired": result.expired,
            },
        )
        return result

    def _process_isolated(self, item_id: int) -> DeliveryOutcome:
        try:
            return self.process_item(item_id)
        except Exception as e:
            # Bookkeeping itself failed (e.g. database error); the claim
            # stays processing until its lease expires
            logger.error(
                f"Unexpected error while processing delivery item: {e}",
                extra={"item_id": item_id},
                exc_info=True,
            )
            return DeliveryOutcome.FAILED

    def process_item(self, item_id: int) -> DeliveryOutcome:
        """
        Claim and dispatch a single delivery item in its own session.

        Returns:
            DeliveryOutcome
        """
        db = self.session_factory()
        try:
            now = self.clock.now()
            if not self.claim_item(db, item_id, now):
                return DeliveryOutcome.SKIPPED

            item = db.get(DeliveryItem, item_id)
            notification = item.notification
            if notification is None:
                item.fail(ORPHAN_ERROR, now)
                db.commit()
                logger.error(
                    "Delivery item has no notification",
                    extra={"item_id": item_id, "channel": item.channel.value},
                )
                return DeliveryOutcome.FAILED

            channel = item.channel
            try:
                self.channels.dispatch(db, notification, channel)
            except Exception as e:
                db.rollback()
                return self._handle_failure(db, item_id, e)

            now = self.clock.now()
            item.complete(now)
            notification.mark_sent(now)
            db.commit()
            logger.debug(
                "Delivery item completed",
                extra={"item_id": item_id, "notification_id": notification.id, "channel": channel.value},
            )
            return DeliveryOutcome.COMPLETED
        finally:
            db.close()

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, ChannelNotImplementedError) and self.fail_fast_unimplemented:
            return False
        if isinstance(error, DeliveryError):
            return error.retryable
        return True

    def _handle_failure(self, db: Session, item_id: int, error: Exception) -> DeliveryOutcome:
        """Record a failed attempt: schedule a retry or fail permanently."""
        now = self.clock.now()
        item = db.get(DeliveryItem, item_id)
        notification = item.notification
        message = str(error) or error.__class__.__name__

        if not isinstance(error, DeliveryError):
            logger.error(
                f"Unexpected dispatch error: {message}",
                extra={"item_id": item_id, "channel": item.channel.value},
                exc_info=error,
            )

        if self._is_retryable(error) and not self.retry_policy.is_exhausted(item.attempt_count, item.max_attempts):
            next_attempt_at = self.retry_policy.next_attempt_at(item.attempt_count, now)
            item.fail(message, now, next_attempt_at)
            if notification is not None:
                notification.mark_failed(message, item.attempt_count, next_attempt_at)
            db.commit()
            logger.warning(
                f"Delivery failed, retry scheduled: {message}",
                extra={
                    "item_id": item_id,
                    "channel": item.channel.value,
                    "attempt": item.attempt_count,
                    "max_attempts": item.max_attempts,
                    "next_attempt_at": next_attempt_at.isoformat(),
                },
            )
            return DeliveryOutcome.RETRY_SCHEDULED

        item.fail(message, now)
        if notification is not None:
            notification.mark_failed(message, item.attempt_count)
        db.commit()
        logger.error(
            f"Delivery failed permanently: {message}",
            extra={
                "item_id": item_id,
                "channel": item.channel.value,
                "attempt": item.attempt_count,
            },
        )
        return DeliveryOutcome.FAILED

    # ========================================================================
    # Maintenance
    # ========================================================================

    def get_queue_status(self) -> Dict[str, int]:
        """
        Count queue items per status, plus how many are due right now.

        Returns:
            Dict with one key per DeliveryStatus value and a "due" key
        """
        db = self.session_factory()
        try:
            counts = {status.value: 0 for status in DeliveryStatus}
            rows = (
                db.query(DeliveryItem.status, func.count(DeliveryItem.id))
                .group_by(DeliveryItem.status)
                .all()
            )
            for status, count in rows:
                counts[DeliveryStatus(status).value] = count
            counts["due"] = (
                db.query(func.count(DeliveryItem.id))
                .filter(self._due(self.clock.now()))
                .scalar()
            )
            return counts
        finally:
            db.close()

    def cleanup_completed(self, max_age_hours: int = 24) -> int:
        """
        Delete completed items whose completion is older than max_age_hours.

        Returns:
            Number of items deleted
        """
        cutoff = self.clock.now() - timedelta(hours=max_age_hours)
        db = self.session_factory()
        try:
            count = (
                db.query(DeliveryItem)
                .filter(
                    DeliveryItem.status == DeliveryStatus.COMPLETED,
                    DeliveryItem.completed_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        if count > 0:
            logger.info(f"Cleaned up {count} completed queue items (>{max_age_hours}h)")
        return count
