"""
UserPresence model: last known connection state of a user.

Written by the WebSocket host on connect/disconnect and by client
heartbeats; read by the presence oracle to decide whether email and push
should be suppressed.
"""

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Enum

from courier.src.models import Base


class PresenceStatus(str, enum.Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class UserPresence(Base):
    """
    Presence record for one user.

    Attributes:
        user_id: User id in the user service (unique)
        status: PresenceStatus
        last_seen_at: Last activity (connect, heartbeat, status change)
        away_since: When the user went away (cleared on return)
        busy_until: End of a busy period, if set
        status_message: Optional free-text status
    """

    __tablename__ = "user_presence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)

    status = Column(
        Enum(PresenceStatus, native_enum=False),
        default=PresenceStatus.OFFLINE,
        nullable=False,
    )
    last_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    away_since = Column(DateTime, nullable=True)
    busy_until = Column(DateTime, nullable=True)
    status_message = Column(String(255), nullable=True)

    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<UserPresence(user_id='{self.user_id}', status='{self.status}')>"
