"""
Pipeline wiring: builds the channel registry, queue consumer, digest jobs
and scheduler from AppSettings.

The FastAPI host calls ``build_pipeline()`` at startup and drives the
returned Scheduler; tests build the same object with fake transports and a
ManualClock.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from courier.src.channels.base import ChannelRegistry
from courier.src.channels.email import EmailChannelSender
from courier.src.channels.in_app import InAppChannelSender, RealtimeTransport
from courier.src.channels.push import PushChannelSender
from courier.src.channels.sms import SmsChannelSender
from courier.src.config.settings import AppSettings
from courier.src.services.delivery_queue_service import DeliveryQueueService
from courier.src.services.digest_service import DigestPeriod, DigestRunResult, DigestService
from courier.src.services.email_notification_service import EmailNotificationService
from courier.src.services.push_subscription_service import PushSubscriptionService
from courier.src.services.retry_policy import RetryPolicy
from courier.src.services.user_directory import UserDirectory
from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.email_templates import EmailRenderer
from courier.src.utils.logging_config import get_logger
from courier.src.utils.mailer import MailTransport, SmtpMailTransport
from courier.src.utils.scheduler import Scheduler


logger = get_logger("services")


PROCESS_QUEUE_JOB = "process-notification-queue"
DAILY_DIGEST_JOB = "daily-digest"
WEEKLY_DIGEST_JOB = "weekly-digest"
PUSH_CLEANUP_JOB = "push-subscription-cleanup"


@dataclass
class Pipeline:
    """Everything the host needs to run and operate the delivery pipeline."""
    settings: AppSettings
    session_factory: Callable[[], Session]
    clock: Clock
    retry_policy: RetryPolicy
    channels: ChannelRegistry
    queue: DeliveryQueueService
    email_service: EmailNotificationService
    user_directory: UserDirectory
    mail_transport: MailTransport
    scheduler: Scheduler
    sleep: Optional[Callable[[float], None]] = None

    def digest_service(self, db: Session) -> DigestService:
        kwargs = {}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        return DigestService(
            db,
            self.email_service,
            clock=self.clock,
            min_notifications=self.settings.digest_min_notifications,
            send_delay_ms=self.settings.digest_send_delay_ms,
            **kwargs,
        )

    def trigger_digest(self, period: DigestPeriod) -> DigestRunResult:
        db = self.session_factory()
        try:
            return self.digest_service(db).process_pending_digests(period)
        finally:
            db.close()

    def cleanup_push_subscriptions(self) -> int:
        db = self.session_factory()
        try:
            return PushSubscriptionService(db, clock=self.clock).cleanup_stale(
                days=self.settings.push_subscription_stale_days
            )
        finally:
            db.close()

    def register_jobs(self) -> None:
        """Register the queue tick, digest and cleanup jobs on the scheduler."""
        self.scheduler.add_interval_job(
            PROCESS_QUEUE_JOB,
            self.settings.processing_interval_seconds,
            self.queue.tick,
        )
        if self.settings.digest_enabled:
            self.scheduler.add_cron_job(
                DAILY_DIGEST_JOB,
                self.settings.digest_daily_cron,
                lambda: self.trigger_digest(DigestPeriod.DAILY),
            )
            self.scheduler.add_cron_job(
                WEEKLY_DIGEST_JOB,
                self.settings.digest_weekly_cron,
                lambda: self.trigger_digest(DigestPeriod.WEEKLY),
            )
        self.scheduler.add_cron_job(
            PUSH_CLEANUP_JOB,
            self.settings.push_cleanup_cron,
            self.cleanup_push_subscriptions,
        )

    def close(self) -> None:
        self.user_directory.close()
        close = getattr(self.mail_transport, "close", None)
        if close is not None:
            close()


def build_pipeline(
    settings: AppSettings,
    session_factory: Callable[[], Session],
    clock: Optional[Clock] = None,
    realtime: Optional[RealtimeTransport] = None,
    mail_transport: Optional[MailTransport] = None,
    user_directory: Optional[UserDirectory] = None,
    sleep: Optional[Callable[[float], None]] = None,
    scheduler_poll_interval: float = 1.0,
) -> Pipeline:
    """
    Assemble the delivery pipeline.

    Args:
        settings: Application settings
        session_factory: Callable returning new sessions
        clock: Time source shared by every component
        realtime: Real-time transport for the in-app channel (None disables it)
        mail_transport: Mail transport (defaults to pooled SMTP from settings)
        user_directory: User directory (defaults to HTTP client from settings)
        sleep: Sleep used between digest emails
        scheduler_poll_interval: Seconds between scheduler evaluations

    Returns:
        Pipeline with all jobs registered
    """
    clock = clock or SystemClock()
    retry_policy = RetryPolicy.from_settings(settings)

    if user_directory is None:
        user_directory = UserDirectory(
            settings.user_service_url,
            service_api_key=settings.service_api_key,
            ttl_seconds=settings.user_cache_ttl_seconds,
        )
    if mail_transport is None:
        mail_transport = SmtpMailTransport.from_settings(settings)

    renderer = EmailRenderer(frontend_url=settings.frontend_url, app_name=settings.email_from_name)
    email_service = EmailNotificationService(
        user_directory,
        mail_transport,
        renderer,
        max_items_per_type=settings.digest_max_items_per_type,
    )

    channels = ChannelRegistry()
    channels.register(InAppChannelSender(realtime))
    channels.register(EmailChannelSender(
        email_service,
        offline_threshold_minutes=settings.offline_threshold_minutes,
        clock=clock,
    ))
    channels.register(PushChannelSender(
        vapid_private_key=settings.vapid_private_key,
        vapid_claims=settings.vapid_claims,
        offline_threshold_minutes=settings.offline_threshold_minutes,
        max_concurrency=settings.push_max_concurrency,
        frontend_url=settings.frontend_url,
        clock=clock,
    ))
    channels.register(SmsChannelSender())

    queue = DeliveryQueueService(
        session_factory,
        channels,
        retry_policy=retry_policy,
        clock=clock,
        batch_size=settings.processing_batch_size,
        dispatch_concurrency=settings.dispatch_concurrency,
        fail_fast_unimplemented=settings.fail_fast_unimplemented_channels,
        processing_lease_seconds=settings.processing_lease_seconds,
    )

    pipeline = Pipeline(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        retry_policy=retry_policy,
        channels=channels,
        queue=queue,
        email_service=email_service,
        user_directory=user_directory,
        mail_transport=mail_transport,
        scheduler=Scheduler(clock=clock, poll_interval=scheduler_poll_interval),
        sleep=sleep,
    )
    pipeline.register_jobs()
    logger.info(
        "Notification pipeline built",
        extra={"channels": [c.value for c in channels.channels], "jobs": pipeline.scheduler.job_names},
    )
    return pipeline
