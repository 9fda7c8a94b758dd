"""
Email rendering using Jinja2 templates.

Every notification type has exactly one EmailTemplate (subject, intro line,
call-to-action and colors). Bodies are rendered from the templates/
directory, wrapped in the shared layout and paired with a plain-text
alternative derived from the HTML.
"""

import html
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from jinja2 import Environment, FileSystemLoader
from markupsafe import Markup

from courier.src.channels.exceptions import TemplateNotFoundError
from courier.src.models.notification import Notification, NotificationType


TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

BLUE = "#2563eb"
GREEN = "#16a34a"


@dataclass(frozen=True)
class EmailTemplate:
    """Per-type email content settings."""
    subject: str
    intro: str
    action_text: str
    default_path: str
    background: str = "#f3f4f6"
    accent: str = "#f3f4f6"
    button_color: str = BLUE
    quote: bool = False


EMAIL_TEMPLATES: Dict[NotificationType, EmailTemplate] = {
    NotificationType.MESSAGE_RECEIVED: EmailTemplate(
        "New message in {app_name}", "You have a new message:", "View Message", "/chat",
        quote=True, accent=BLUE,
    ),
    NotificationType.MENTION: EmailTemplate(
        "You were mentioned in {app_name}", "You were mentioned in a conversation:",
        "View Conversation", "/chat", quote=True, accent=BLUE,
    ),
    NotificationType.TRAINING_SCHEDULED: EmailTemplate(
        "New training session scheduled", "A new training session has been scheduled:",
        "View Details", "/calendar",
    ),
    NotificationType.TRAINING_UPDATED: EmailTemplate(
        "Training session updated", "A training session has been updated:",
        "View Updated Details", "/calendar", background="#fef3c7", accent="#f59e0b",
    ),
    NotificationType.TRAINING_CANCELLED: EmailTemplate(
        "Training session cancelled", "A training session has been cancelled:",
        "View Calendar", "/calendar", background="#fee2e2", accent="#ef4444",
    ),
    NotificationType.MEDICAL_APPOINTMENT: EmailTemplate(
        "Medical appointment scheduled", "You have a medical appointment scheduled:",
        "View Appointment Details", "/medical", background="#e0e7ff", accent="#6366f1",
    ),
    NotificationType.INJURY_UPDATE: EmailTemplate(
        "Injury status update", "There's an update regarding your injury status:",
        "View Medical Record", "/medical",
    ),
    NotificationType.EQUIPMENT_FITTING: EmailTemplate(
        "Equipment fitting scheduled", "You have an equipment fitting scheduled:",
        "View Appointment", "/equipment",
    ),
    NotificationType.PAYMENT_DUE: EmailTemplate(
        "Payment due reminder", "You have a payment due:", "Make Payment", "/payments",
        background="#fef3c7", accent="#f59e0b", button_color=GREEN,
    ),
    NotificationType.PAYMENT_RECEIVED: EmailTemplate(
        "Payment received", "Your payment has been received:", "View Receipt", "/payments",
        background="#d1fae5", accent="#10b981",
    ),
    NotificationType.TEAM_ANNOUNCEMENT: EmailTemplate(
        "Team announcement", "Important team announcement:", "View Full Announcement", "/team",
        background="#e0e7ff", accent="#6366f1",
    ),
    NotificationType.SCHEDULE_CHANGE: EmailTemplate(
        "Schedule change notification", "There has been a change to your schedule:",
        "View Updated Schedule", "/calendar", background="#fef3c7", accent="#f59e0b",
    ),
    NotificationType.WELLNESS_REMINDER: EmailTemplate(
        "Complete your wellness check", "Please complete your wellness check:",
        "Complete Wellness Check", "/wellness",
    ),
    NotificationType.PERFORMANCE_REPORT: EmailTemplate(
        "New performance report available", "Your performance report is ready:",
        "View Report", "/performance", background="#d1fae5", accent="#10b981",
    ),
    NotificationType.CALENDAR_REMINDER: EmailTemplate(
        "Upcoming event reminder", "Reminder about your upcoming event:",
        "View Event Details", "/calendar", background="#e0e7ff", accent="#6366f1",
    ),
    NotificationType.SYSTEM_ALERT: EmailTemplate(
        "System notification", "System notification:", "Learn More", "/notifications",
    ),
    NotificationType.REACTION_ADDED: EmailTemplate(
        "Someone reacted to your message", "Someone reacted to your message:",
        "View Message", "/chat",
    ),
    NotificationType.TASK_ASSIGNED: EmailTemplate(
        "New task assigned to you", "You have been assigned a new task:", "View Task", "/tasks",
        background="#e0e7ff", accent="#6366f1",
    ),
    NotificationType.DOCUMENT_SHARED: EmailTemplate(
        "Document shared with you", "A document has been shared with you:",
        "View Document", "/documents",
    ),
    NotificationType.FEEDBACK_RECEIVED: EmailTemplate(
        "New feedback received", "You've received new feedback:", "View Feedback", "/feedback",
        background="#d1fae5", accent="#10b981",
    ),
}


# Section headings used in digest emails
TYPE_TITLES: Dict[NotificationType, str] = {
    NotificationType.MESSAGE_RECEIVED: "Messages",
    NotificationType.MENTION: "Mentions",
    NotificationType.TRAINING_SCHEDULED: "Training Sessions",
    NotificationType.TRAINING_UPDATED: "Training Updates",
    NotificationType.TRAINING_CANCELLED: "Cancelled Sessions",
    NotificationType.MEDICAL_APPOINTMENT: "Medical Appointments",
    NotificationType.INJURY_UPDATE: "Injury Updates",
    NotificationType.EQUIPMENT_FITTING: "Equipment Fittings",
    NotificationType.PAYMENT_DUE: "Payment Reminders",
    NotificationType.PAYMENT_RECEIVED: "Payment Confirmations",
    NotificationType.TEAM_ANNOUNCEMENT: "Team Announcements",
    NotificationType.SCHEDULE_CHANGE: "Schedule Changes",
    NotificationType.WELLNESS_REMINDER: "Wellness Reminders",
    NotificationType.PERFORMANCE_REPORT: "Performance Reports",
    NotificationType.CALENDAR_REMINDER: "Calendar Reminders",
    NotificationType.SYSTEM_ALERT: "System Alerts",
    NotificationType.REACTION_ADDED: "Reactions",
    NotificationType.TASK_ASSIGNED: "Tasks",
    NotificationType.DOCUMENT_SHARED: "Shared Documents",
    NotificationType.FEEDBACK_RECEIVED: "Feedback",
}


@dataclass
class RenderedEmail:
    """Subject plus HTML and plain-text bodies ready for the mail transport."""
    subject: str
    html: str
    text: str


@dataclass
class DigestSection:
    """One notification type inside a digest email."""
    title: str
    total: int
    items: List[Notification] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return self.total - len(self.items)


_HTML_TO_TEXT_RULES = [
    (re.compile(r"<h[1-6][^>]*>(.*?)</h[1-6]>", re.IGNORECASE | re.DOTALL), r"\1\n\n"),
    (re.compile(r"<p(?:\s[^>]*)?>(.*?)</p>", re.IGNORECASE | re.DOTALL), r"\1\n\n"),
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"<a\s[^>]*?href=\"(.*?)\"[^>]*>(.*?)</a>", re.IGNORECASE | re.DOTALL), r"\2 (\1)"),
    (re.compile(r"<(style|title)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL), ""),
    (re.compile(r"<[^>]+>"), ""),
]


def html_to_text(markup: str) -> str:
    """
    Derive a plain-text alternative from an HTML email body.

    Headings and paragraphs become blank-line separated blocks, links become
    ``text (url)`` and every other tag is dropped.
    """
    text = markup
    for pattern, replacement in _HTML_TO_TEXT_RULES:
        text = pattern.sub(replacement, text)
    text = html.unescape(text)

    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


class EmailRenderer:
    """
    Renders notification and digest emails.

    Usage:
        >>> renderer = EmailRenderer(frontend_url="https://app.example.com")
        >>> email = renderer.render_notification(notification, "Alex Smith")
        >>> email.subject
        'New training session scheduled'
    """

    def __init__(
        self,
        frontend_url: str = "http://localhost:3002",
        app_name: str = "Hockey Hub",
        template_dir: Optional[Path] = None,
    ):
        self.frontend_url = frontend_url.rstrip("/")
        self.app_name = app_name
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATE_DIR)),
            autoescape=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _wrap_in_layout(self, content: str) -> str:
        return self.env.get_template("layout.html.j2").render(
            app_name=self.app_name,
            content=Markup(content),
            preferences_url=f"{self.frontend_url}/settings/notifications",
        )

    def render_notification(self, notification: Notification, user_name: str) -> RenderedEmail:
        """
        Render the single email for a notification.

        Args:
            notification: Notification to render
            user_name: Recipient display name used in the greeting

        Returns:
            RenderedEmail with subject, wrapped HTML and plain text

        Raises:
            TemplateNotFoundError: If the notification type has no template
        """
        try:
            template = EMAIL_TEMPLATES[NotificationType(notification.type)]
        except (KeyError, ValueError):
            raise TemplateNotFoundError(str(notification.type))

        action_url = notification.action_url or f"{self.frontend_url}{template.default_path}"
        content = self.env.get_template("notification.html.j2").render(
            user_name=user_name,
            notification=notification,
            template=template,
            action_url=action_url,
            action_text=notification.action_text or template.action_text,
        )

        return RenderedEmail(
            subject=template.subject.format(app_name=self.app_name),
            html=self._wrap_in_layout(content),
            text=html_to_text(content),
        )

    def build_digest_sections(
        self,
        notifications: Sequence[Notification],
        max_items_per_type: int = 5,
    ) -> List[DigestSection]:
        """Group notifications by type (first-seen order), keeping at most max_items_per_type each."""
        grouped: Dict[NotificationType, List[Notification]] = {}
        for notification in notifications:
            grouped.setdefault(NotificationType(notification.type), []).append(notification)

        return [
            DigestSection(
                title=TYPE_TITLES.get(notification_type, "Notifications"),
                total=len(items),
                items=items[:max_items_per_type],
            )
            for notification_type, items in grouped.items()
        ]

    def render_digest(
        self,
        notifications: Sequence[Notification],
        user_name: str,
        period: str,
        max_items_per_type: int = 5,
    ) -> RenderedEmail:
        """
        Render a digest email summarizing several notifications.

        Args:
            notifications: Notifications included in the digest
            user_name: Recipient display name
            period: "daily" or "weekly"
            max_items_per_type: Items listed per type before "... and N more"

        Returns:
            RenderedEmail
        """
        content = self.env.get_template("digest.html.j2").render(
            user_name=user_name,
            period=period,
            app_name=self.app_name,
            sections=self.build_digest_sections(notifications, max_items_per_type),
            notifications_url=f"{self.frontend_url}/notifications",
        )
        return RenderedEmail(
            subject=f"Your {period} {self.app_name} digest - {len(notifications)} notifications",
            html=self._wrap_in_layout(content),
            text=html_to_text(content),
        )
