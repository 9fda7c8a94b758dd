"""
Pytest configuration and fixtures for Courier tests.

Provides shared fixtures for:
- Test database sessions and a session factory for the queue consumer
- A manual clock
- Fake mail, real-time and user directory transports
- Sample data factories
"""

import os
import pytest
from datetime import datetime
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ['COURIER_DB_URL'] = 'sqlite:///:memory:'
os.environ.setdefault('COURIER_ENV', 'test')

from courier.src.models import (  # noqa: E402
    Base,
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    PushSubscription,
)
from courier.src.services.user_directory import UserInfo  # noqa: E402
from courier.src.utils.clock import ManualClock  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    from sqlalchemy import event

    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Enable foreign key constraints for SQLite
    # This must be set for each connection
    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def session_factory(test_db_engine):
    """Session factory bound to the test engine (used by the queue consumer)."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )


@pytest.fixture(scope='function')
def test_db_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Utility Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def manual_clock():
    """Clock frozen at Monday 2025-01-06 10:00 (UTC) until advanced."""
    return ManualClock(datetime(2025, 1, 6, 10, 0, 0))


class FakeMailTransport:
    """Records every message instead of talking to an SMTP server."""

    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, to, subject, html, text, priority="normal"):
        if self.error is not None:
            raise self.error
        self.sent.append({
            "to": to,
            "subject": subject,
            "html": html,
            "text": text,
            "priority": priority,
        })
        return f"<{len(self.sent)}@test.local>"

    def close(self):
        pass


class FakeRealtime:
    """Captures real-time publishes."""

    def __init__(self):
        self.published = []

    def publish(self, room, event, payload):
        self.published.append((room, event, payload))


class FakeUserDirectory:
    """In-memory user directory."""

    def __init__(self, users=None):
        self.users = dict(users or {})
        self.lookups = []
        self.closed = False

    def add(self, user_id, email, first_name="Alex", last_name="Smith"):
        self.users[user_id] = UserInfo(id=user_id, email=email, first_name=first_name, last_name=last_name)

    def get_user_info(self, user_id):
        self.lookups.append(user_id)
        return self.users.get(user_id)

    def close(self):
        self.closed = True


@pytest.fixture
def mail_transport():
    return FakeMailTransport()


@pytest.fixture
def realtime():
    return FakeRealtime()


@pytest.fixture
def user_directory():
    directory = FakeUserDirectory()
    directory.add("user-1", "alex@example.com")
    directory.add("user-2", "jordan@example.com", first_name="Jordan", last_name="Lee")
    return directory


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def create_notification(test_db_session, manual_clock):
    """Factory for inserting Notification rows directly (no delivery items)."""
    def _create(
        recipient_id="user-1",
        type=NotificationType.TRAINING_SCHEDULED,
        title="Morning skate",
        message="Ice time at 7:00 on rink 2",
        channels=(NotificationChannel.IN_APP, NotificationChannel.EMAIL),
        priority=NotificationPriority.MEDIUM,
        status=NotificationStatus.PENDING,
        created_at=None,
        read_at=None,
        metadata=None,
        action_url=None,
    ):
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            channels=[NotificationChannel(c).value for c in channels],
            priority=priority,
            status=status,
            created_at=created_at or manual_clock.now(),
            read_at=read_at,
            metadata_json=metadata,
            action_url=action_url,
        )
        test_db_session.add(notification)
        test_db_session.commit()
        test_db_session.refresh(notification)
        return notification
    return _create


@pytest.fixture
def create_push_subscription(test_db_session, manual_clock):
    """Factory for inserting PushSubscription rows."""
    counter = {"n": 0}

    def _create(user_id="user-1", endpoint=None, is_active=True, created_at=None, last_used_at=None):
        counter["n"] += 1
        subscription = PushSubscription(
            user_id=user_id,
            endpoint=endpoint or f"https://push.example.com/sub/{counter['n']}",
            p256dh_key="test-p256dh",
            auth_key="test-auth",
            is_active=is_active,
            created_at=created_at or manual_clock.now(),
            updated_at=created_at or manual_clock.now(),
            last_used_at=last_used_at,
        )
        test_db_session.add(subscription)
        test_db_session.commit()
        test_db_session.refresh(subscription)
        return subscription
    return _create
