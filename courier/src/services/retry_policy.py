"""
Retry/backoff policy for channel delivery.

Backoff is table-driven: after the Nth failed attempt the item waits
``delays[N-1]`` seconds, capped at the last entry of the table.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence

from courier.src.models.notification import NotificationPriority, NotificationType


DEFAULT_RETRY_DELAYS = (60, 300, 900, 3600)
DEFAULT_MAX_ATTEMPTS = 3


class RetryPolicy:
    """
    Backoff table plus attempt budgets.

    Attributes:
        delays: Seconds to wait after attempt 1, 2, 3, ... (last entry repeats)
        default_max_attempts: Budget when no override applies
        priority_max_attempts: Budget overrides keyed by priority
        type_max_attempts: Budget overrides keyed by notification type
            (take precedence over priority overrides)
    """

    def __init__(
        self,
        delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        priority_max_attempts: Optional[Dict[NotificationPriority, int]] = None,
        type_max_attempts: Optional[Dict[NotificationType, int]] = None,
    ):
        if not delays:
            raise ValueError("Retry delay table must not be empty")
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be at least 1")
        self.delays = tuple(int(d) for d in delays)
        self.default_max_attempts = default_max_attempts
        self.priority_max_attempts = {
            NotificationPriority(k): v for k, v in (priority_max_attempts or {}).items()
        }
        self.type_max_attempts = {
            NotificationType(k): v for k, v in (type_max_attempts or {}).items()
        }

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            delays=settings.retry_delay_table,
            default_max_attempts=settings.default_max_attempts,
            priority_max_attempts={NotificationPriority.URGENT: settings.urgent_max_attempts},
        )

    def next_delay(self, attempt: int) -> int:
        """Seconds to wait after the given (1-based) failed attempt."""
        index = min(max(attempt, 1) - 1, len(self.delays) - 1)
        return self.delays[index]

    def next_attempt_at(self, attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.next_delay(attempt))

    def max_attempts_for(
        self,
        priority: Optional[NotificationPriority] = None,
        notification_type: Optional[NotificationType] = None,
    ) -> int:
        if notification_type is not None:
            override = self.type_max_attempts.get(NotificationType(notification_type))
            if override is not None:
                return override
        if priority is not None:
            override = self.priority_max_attempts.get(NotificationPriority(priority))
            if override is not None:
                return override
        return self.default_max_attempts

    def is_exhausted(self, attempt_count: int, max_attempts: int) -> bool:
        return attempt_count >= max_attempts
