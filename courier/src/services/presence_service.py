"""
Presence service: the reachability oracle used to suppress email and push.

A user is considered offline (and therefore a candidate for email/push)
when there is no presence record, the record says offline, or the last
activity is older than the offline threshold regardless of the stored status.
Lookup errors fail open: the user is treated as offline so that the
notification still goes out.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from courier.src.models.presence import UserPresence, PresenceStatus
from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.logging_config import get_logger


logger = get_logger("services")


DEFAULT_OFFLINE_THRESHOLD_MINUTES = 15


class PresenceService:
    """
    Service for reading and writing user presence.

    Usage:
        >>> presence = PresenceService(db)
        >>> presence.heartbeat("user-1")
        >>> presence.is_user_offline("user-1")
        False
    """

    def __init__(
        self,
        db: Session,
        offline_threshold_minutes: int = DEFAULT_OFFLINE_THRESHOLD_MINUTES,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize presence service.

        Args:
            db: SQLAlchemy database session
            offline_threshold_minutes: Inactivity after which a user counts as offline
            clock: Time source (defaults to the system clock)
        """
        self.db = db
        self.offline_threshold = timedelta(minutes=offline_threshold_minutes)
        self.clock = clock or SystemClock()

    def get_presence(self, user_id: str) -> Optional[UserPresence]:
        return (
            self.db.query(UserPresence)
            .filter(UserPresence.user_id == user_id)
            .first()
        )

    def is_user_offline(self, user_id: str) -> bool:
        """
        Check whether email/push should be sent to a user.

        Args:
            user_id: User id

        Returns:
            True if the user has no record, is offline, or has been inactive
            longer than the threshold. Also True if the lookup fails.
        """
        try:
            presence = self.get_presence(user_id)
        except SQLAlchemyError as e:
            # Leave the caller's session usable for its own bookkeeping
            self.db.rollback()
            logger.error(
                f"Presence lookup failed, treating user as offline: {e}",
                extra={"user_id": user_id},
            )
            return True

        if presence is None:
            return True
        if presence.status == PresenceStatus.OFFLINE:
            return True
        return presence.last_seen_at < self.clock.now() - self.offline_threshold

    def is_user_reachable(self, user_id: str) -> bool:
        return not self.is_user_offline(user_id)

    def update_presence(
        self,
        user_id: str,
        status: PresenceStatus,
        status_message: Optional[str] = None,
        busy_until: Optional[datetime] = None,
    ) -> UserPresence:
        """
        Record a presence change and refresh last_seen_at.

        away_since is stamped when a user first goes away and cleared when they
        leave the away state; busy_until only applies while busy.

        Args:
            user_id: User id
            status: New PresenceStatus
            status_message: Optional free-text status
            busy_until: End of the busy period (busy status only)

        Returns:
            Updated UserPresence
        """
        status = PresenceStatus(status)
        now = self.clock.now()
        presence = self.get_presence(user_id)
        if presence is None:
            presence = UserPresence(user_id=user_id, status=status, last_seen_at=now)
            self.db.add(presence)

        if status == PresenceStatus.AWAY:
            if presence.status != PresenceStatus.AWAY or presence.away_since is None:
                presence.away_since = now
        else:
            presence.away_since = None

        presence.busy_until = busy_until if status == PresenceStatus.BUSY else None
        presence.status = status
        presence.status_message = status_message
        presence.last_seen_at = now
        presence.updated_at = now

        self.db.commit()
        self.db.refresh(presence)
        logger.debug(
            "Presence updated",
            extra={"user_id": user_id, "status": status.value},
        )
        return presence

    def heartbeat(self, user_id: str) -> UserPresence:
        """Refresh last_seen_at; an unknown or offline user becomes online."""
        presence = self.get_presence(user_id)
        if presence is None or presence.status == PresenceStatus.OFFLINE:
            return self.update_presence(user_id, PresenceStatus.ONLINE)

        now = self.clock.now()
        presence.last_seen_at = now
        presence.updated_at = now
        self.db.commit()
        return presence

    def set_offline(self, user_id: str) -> UserPresence:
        return self.update_presence(user_id, PresenceStatus.OFFLINE)
