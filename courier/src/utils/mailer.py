"""
Pooled SMTP mail transport.

Outgoing email (immediate notifications and digests) shares one bounded
pool of SMTP connections. A connection is retired after a fixed number of
messages or as soon as it raises, so a broken socket is never reused.
"""

import smtplib
import threading
from contextlib import contextmanager
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from courier.src.utils.logging_config import get_logger


logger = get_logger("channels")


class MailTransport(Protocol):
    """Send primitive used by the email services."""

    def send(self, to: str, subject: str, html: str, text: str, priority: str = "normal") -> str:
        """Send one message and return its Message-ID; raise on failure."""
        ...


class SmtpConnectionPool:
    """
    Bounded pool of reusable SMTP connections.

    Args:
        factory: Callable returning a connected (and authenticated) SMTP client
        max_connections: Maximum simultaneous connections
        max_messages: Messages sent on a connection before it is replaced
    """

    def __init__(
        self,
        factory: Callable[[], smtplib.SMTP],
        max_connections: int = 5,
        max_messages: int = 100,
    ):
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self._factory = factory
        self._max_messages = max_messages
        self._slots = threading.BoundedSemaphore(max_connections)
        self._lock = threading.Lock()
        self._idle: List[smtplib.SMTP] = []
        self._sent: Dict[int, int] = {}
        self._closed = False

    @contextmanager
    def connection(self) -> Iterator[smtplib.SMTP]:
        """Check out a connection for one message."""
        self._slots.acquire()
        try:
            with self._lock:
                if self._closed:
                    raise RuntimeError("SMTP pool is closed")
                conn = self._idle.pop() if self._idle else None
            if conn is None:
                conn = self._factory()
                self._sent[id(conn)] = 0

            try:
                yield conn
            except Exception:
                self._discard(conn)
                raise

            self._sent[id(conn)] = self._sent.get(id(conn), 0) + 1
            if self._sent[id(conn)] >= self._max_messages:
                logger.debug("Rotating SMTP connection", extra={"messages": self._sent[id(conn)]})
                self._discard(conn)
            else:
                with self._lock:
                    self._idle.append(conn)
        finally:
            self._slots.release()

    def _discard(self, conn: smtplib.SMTP) -> None:
        self._sent.pop(id(conn), None)
        try:
            conn.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.debug(f"Ignoring error while closing SMTP connection: {e}")

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for conn in idle:
            self._discard(conn)


class SmtpMailTransport:
    """
    MailTransport backed by an SmtpConnectionPool.

    Usage:
        >>> transport = SmtpMailTransport.from_settings(get_settings())
        >>> transport.send("alex@example.com", "Hi", "<p>Hi</p>", "Hi")
    """

    def __init__(
        self,
        pool: SmtpConnectionPool,
        from_email: str,
        from_name: str = "",
        reply_to: Optional[str] = None,
    ):
        self.pool = pool
        self.from_email = from_email
        self.from_name = from_name
        self.reply_to = reply_to or None

    @classmethod
    def from_settings(cls, settings) -> "SmtpMailTransport":
        def connect() -> smtplib.SMTP:
            client = smtplib.SMTP(
                settings.smtp_host,
                settings.smtp_port,
                timeout=settings.smtp_timeout_seconds,
            )
            if settings.smtp_use_tls:
                client.starttls()
            if settings.smtp_username:
                client.login(settings.smtp_username, settings.smtp_password)
            return client

        pool = SmtpConnectionPool(
            connect,
            max_connections=settings.smtp_pool_size,
            max_messages=settings.smtp_max_messages_per_connection,
        )
        return cls(
            pool,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
            reply_to=settings.email_reply_to,
        )

    def build_message(self, to: str, subject: str, html: str, text: str, priority: str = "normal") -> EmailMessage:
        message = EmailMessage()
        message["From"] = formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=self.from_email.rpartition("@")[2] or None)
        if self.reply_to:
            message["Reply-To"] = self.reply_to
        if priority == "high":
            message["X-Priority"] = "1"
            message["Importance"] = "high"
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        return message

    def send(self, to: str, subject: str, html: str, text: str, priority: str = "normal") -> str:
        """
        Send one email through the pool.

        Returns:
            The Message-ID header of the sent message

        Raises:
            smtplib.SMTPException / OSError: Transport failure (retried upstream)
        """
        message = self.build_message(to, subject, html, text, priority)
        with self.pool.connection() as conn:
            conn.send_message(message)
        logger.debug(
            "Email sent",
            extra={"to": to, "message_id": message["Message-ID"], "priority": priority},
        )
        return message["Message-ID"]

    def close(self) -> None:
        self.pool.close()
