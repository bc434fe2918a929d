"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str

    # Internal scheduled endpoints (cron dispatcher, operator tooling)
    INTERNAL_SECRET: str = ""  # Secret for /internal/* endpoints

    # Token Encryption (OAuth access/refresh tokens at rest)
    FERNET_KEY: str = ""  # Comma-separated Fernet keys; the first one encrypts

    # Google OAuth (token refresh only - consent flow lives elsewhere)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # Microsoft identity platform (token refresh only)
    MICROSOFT_CLIENT_ID: str = ""
    MICROSOFT_CLIENT_SECRET: str = ""
    MICROSOFT_TENANT: str = "common"

    # Slack Events API
    SLACK_SIGNING_SECRET: str = ""  # Empty disables signature checks (local dev only)

    # Gmail push (Pub/Sub)
    GMAIL_PUSH_TOPIC: str = ""  # projects/<project>/topics/<topic>
    GMAIL_PUSH_VERIFICATION_TOKEN: str = ""  # Optional ?token= on the push endpoint

    # Outlook change notifications
    OUTLOOK_NOTIFICATION_URL: str = "http://localhost:8000/webhooks/outlook"

    # Sync engine
    SYNC_MAX_MESSAGES: int = 50  # Per fetch call
    SYNC_MAX_EXTRA_PASSES: int = 1  # Follow-up passes when the provider reports more
    SYNC_ERROR_THRESHOLD: int = 3  # Retryable failures tolerated before status=error
    SYNC_LEASE_TTL_SECONDS: int = 120
    SYNC_CONCURRENCY: int = 4  # Orchestrator worker pool size
    SYNC_AUTO_CLASSIFY: bool = True
    SYNC_BOOTSTRAP_DAYS: int = 7  # First-sync lookback window

    # Provider HTTP timeouts (seconds)
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    RENEWAL_TIMEOUT_SECONDS: float = 10.0

    # Webhook renewal
    GMAIL_WEBHOOK_RENEW_HOURS: int = 24  # Gmail watch lasts 7 days
    OUTLOOK_WEBHOOK_RENEW_HOURS: int = 12  # Graph mail subscriptions last < 3 days
    OUTLOOK_SUBSCRIPTION_MINUTES: int = 4319  # 3 days minus 1 minute
    WEBHOOK_RENEWAL_FAILURE_CAP: int = 3

    # Classifier (external black box)
    CLASSIFIER_URL: str = ""  # Empty disables classification
    CLASSIFIER_API_KEY: str = ""
    CLASSIFIER_TIMEOUT_SECONDS: float = 20.0

    # Worker
    WORKER_POLL_INTERVAL_SECONDS: int = 5
    WORKER_BATCH_SIZE: int = 10

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_WEBHOOK: int = 600
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def classifier_enabled(self) -> bool:
        return bool(self.CLASSIFIER_URL)


settings = Settings()
