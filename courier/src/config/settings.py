"""
Application settings configuration for Courier.

Centralized settings loaded from environment variables.
"""

from functools import lru_cache
from typing import Dict, List, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment Variables:
        NOTIFICATION_BATCH_SIZE: Max queue items claimed per processing tick (default: 10)
        NOTIFICATION_PROCESSING_INTERVAL: Seconds between processing ticks (default: 5)
        NOTIFICATION_DISPATCH_CONCURRENCY: Worker threads used to dispatch claimed items (default: 4)
        NOTIFICATION_PROCESSING_LEASE: Seconds before an unfinished claim may be taken again (default: 600)
        NOTIFICATION_MAX_ATTEMPTS: Default delivery attempts per channel (default: 3)
        NOTIFICATION_URGENT_MAX_ATTEMPTS: Delivery attempts for urgent notifications (default: 5)
        NOTIFICATION_RETRY_DELAYS: Comma-separated backoff table in seconds (default: "60,300,900,3600")
        NOTIFICATION_FAIL_FAST_UNIMPLEMENTED: Permanently fail items for channels with no backend
        OFFLINE_THRESHOLD_MINUTES: Minutes since last activity before a user counts as offline
        DIGEST_ENABLED / DIGEST_DAILY_CRON / DIGEST_WEEKLY_CRON: Digest scheduling
        DIGEST_MIN_NOTIFICATIONS: Minimum unread notifications before a digest is sent
        SMTP_HOST / SMTP_PORT / SMTP_USERNAME / SMTP_PASSWORD / SMTP_USE_TLS: Mail server
        SMTP_POOL_SIZE / SMTP_MAX_MESSAGES: SMTP connection pool bounds
        USER_SERVICE_URL / SERVICE_API_KEY: User directory lookups
        VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY / VAPID_SUBJECT: Web Push credentials
    """

    # Queue processing
    processing_batch_size: int = Field(
        default=10,
        validation_alias="NOTIFICATION_BATCH_SIZE",
        ge=1,
        le=500,
    )

    processing_interval_seconds: float = Field(
        default=5.0,
        validation_alias="NOTIFICATION_PROCESSING_INTERVAL",
        gt=0,
    )

    dispatch_concurrency: int = Field(
        default=4,
        validation_alias="NOTIFICATION_DISPATCH_CONCURRENCY",
        ge=1,
        le=64,
    )

    processing_lease_seconds: int = Field(
        default=600,
        validation_alias="NOTIFICATION_PROCESSING_LEASE",
        ge=1,
    )

    default_max_attempts: int = Field(
        default=3,
        validation_alias="NOTIFICATION_MAX_ATTEMPTS",
        ge=1,
    )

    urgent_max_attempts: int = Field(
        default=5,
        validation_alias="NOTIFICATION_URGENT_MAX_ATTEMPTS",
        ge=1,
    )

    retry_delays: str = Field(
        default="60,300,900,3600",
        validation_alias="NOTIFICATION_RETRY_DELAYS",
        description="Comma-separated delays (seconds) applied after attempt 1, 2, 3, ...",
    )

    # SMS has no backend; by default it burns its retry budget like any other failure
    fail_fast_unimplemented_channels: bool = Field(
        default=False,
        validation_alias="NOTIFICATION_FAIL_FAST_UNIMPLEMENTED",
    )

    # Presence
    offline_threshold_minutes: int = Field(
        default=15,
        validation_alias="OFFLINE_THRESHOLD_MINUTES",
        ge=1,
    )

    # Digest emails
    digest_enabled: bool = Field(default=True, validation_alias="DIGEST_ENABLED")

    digest_daily_cron: str = Field(
        default="0 8 * * *",
        validation_alias="DIGEST_DAILY_CRON",
        description="minute hour day_of_month month day_of_week",
    )

    digest_weekly_cron: str = Field(
        default="0 9 * * 1",
        validation_alias="DIGEST_WEEKLY_CRON",
    )

    digest_min_notifications: int = Field(
        default=3,
        validation_alias="DIGEST_MIN_NOTIFICATIONS",
        ge=1,
    )

    digest_max_items_per_type: int = Field(
        default=5,
        validation_alias="DIGEST_MAX_ITEMS_PER_TYPE",
        ge=1,
    )

    digest_send_delay_ms: int = Field(
        default=100,
        validation_alias="DIGEST_SEND_DELAY_MS",
        ge=0,
    )

    push_cleanup_cron: str = Field(
        default="0 3 * * *",
        validation_alias="PUSH_CLEANUP_CRON",
    )

    # SMTP
    smtp_host: str = Field(default="", validation_alias="SMTP_HOST")
    smtp_port: int = Field(default=587, validation_alias="SMTP_PORT")
    smtp_username: str = Field(default="", validation_alias="SMTP_USERNAME")
    smtp_password: str = Field(default="", validation_alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, validation_alias="SMTP_USE_TLS")
    smtp_timeout_seconds: float = Field(default=30.0, validation_alias="SMTP_TIMEOUT")

    smtp_pool_size: int = Field(
        default=5,
        validation_alias="SMTP_POOL_SIZE",
        ge=1,
    )

    smtp_max_messages_per_connection: int = Field(
        default=100,
        validation_alias="SMTP_MAX_MESSAGES",
        ge=1,
    )

    email_from: str = Field(default="noreply@hockeyhub.local", validation_alias="EMAIL_FROM")
    email_from_name: str = Field(default="Hockey Hub", validation_alias="EMAIL_FROM_NAME")
    email_reply_to: str = Field(default="", validation_alias="EMAIL_REPLY_TO")

    frontend_url: str = Field(
        default="http://localhost:3002",
        validation_alias="FRONTEND_URL",
    )

    # User directory
    user_service_url: str = Field(
        default="http://localhost:3001",
        validation_alias="USER_SERVICE_URL",
    )

    service_api_key: str = Field(default="", validation_alias="SERVICE_API_KEY")

    user_cache_ttl_seconds: int = Field(
        default=300,
        validation_alias="USER_CACHE_TTL_SECONDS",
        ge=1,
    )

    # VAPID settings for Web Push notifications
    vapid_public_key: str = Field(
        default="",
        validation_alias="VAPID_PUBLIC_KEY",
        description="Base64url-encoded VAPID public key for Web Push subscriptions"
    )

    vapid_private_key: str = Field(
        default="",
        validation_alias="VAPID_PRIVATE_KEY",
        description="Base64url-encoded VAPID private key for signing push messages"
    )

    vapid_subject: str = Field(
        default="",
        validation_alias="VAPID_SUBJECT",
        description="VAPID subject (mailto: or https: URL identifying the push sender)"
    )

    push_max_concurrency: int = Field(
        default=4,
        validation_alias="PUSH_MAX_CONCURRENCY",
        ge=1,
    )

    push_subscription_stale_days: int = Field(
        default=30,
        validation_alias="PUSH_SUBSCRIPTION_STALE_DAYS",
        ge=1,
    )

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    @field_validator("retry_delays")
    @classmethod
    def validate_retry_delays(cls, v: str) -> str:
        """Validate that the backoff table is a non-decreasing list of positive ints."""
        try:
            delays = [int(part.strip()) for part in v.split(",") if part.strip()]
        except ValueError:
            raise ValueError("NOTIFICATION_RETRY_DELAYS must be comma-separated integers")
        if not delays:
            raise ValueError("NOTIFICATION_RETRY_DELAYS must contain at least one delay")
        if any(d <= 0 for d in delays):
            raise ValueError("NOTIFICATION_RETRY_DELAYS entries must be positive")
        if any(b < a for a, b in zip(delays, delays[1:])):
            raise ValueError("NOTIFICATION_RETRY_DELAYS must be non-decreasing")
        return v

    @field_validator("digest_daily_cron", "digest_weekly_cron", "push_cleanup_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        """Validate that a cron expression has the five standard fields."""
        if len(v.split()) != 5:
            raise ValueError(f"Cron expression must have 5 fields: {v!r}")
        return v

    @property
    def retry_delay_table(self) -> Tuple[int, ...]:
        """Parsed backoff table in seconds."""
        return tuple(int(part.strip()) for part in self.retry_delays.split(",") if part.strip())

    @property
    def vapid_configured(self) -> bool:
        """Check if VAPID keys are properly configured for Web Push."""
        return bool(self.vapid_public_key and self.vapid_private_key and self.vapid_subject)

    @property
    def vapid_claims(self) -> Dict[str, str]:
        return {"sub": self.vapid_subject} if self.vapid_subject else {}

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)

    def validate_channels(self) -> List[str]:
        """
        Report channel configuration problems at startup.

        Items for a misconfigured channel still fail (and retry) per item;
        this only surfaces the cause early in the logs.

        Returns:
            List of human-readable problems (empty when fully configured)
        """
        problems = []
        if not self.vapid_configured:
            problems.append("VAPID keys are not configured; push delivery will fail")
        if not self.smtp_configured:
            problems.append("SMTP_HOST is not configured; email delivery will fail")
        if not self.user_service_url:
            problems.append("USER_SERVICE_URL is not configured; email recipients cannot be resolved")
        return problems


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get cached application settings instance.

    Returns:
        AppSettings: Configured application settings from environment
    """
    return AppSettings()
