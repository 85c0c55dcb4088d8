"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.3.0"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # Google OAuth client (token refresh)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # Token Encryption (Fernet key for stored OAuth tokens)
    FERNET_KEY: str = ""

    # Gmail push (users.watch)
    GMAIL_PUSH_TOPIC: str = ""  # projects/<project>/topics/<topic>
    GMAIL_PUSH_LABEL_IDS: str = "INBOX"

    # Provider calls (refresh, watch, history) share one bounded timeout
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    PROVIDER_MAX_ATTEMPTS: int = 2
    PROVIDER_RETRY_BASE_DELAY: float = 0.5

    # Token refresh scheduling
    ACCESS_TOKEN_LIFETIME_SECONDS: int = 3600
    TOKEN_REFRESH_LEAD_SECONDS: int = 300
    TOKEN_REFRESH_SWEEP_WINDOW_SECONDS: int = 0  # 0 = derived, see token_refresh_sweep_window_seconds
    TOKEN_REFRESH_SWEEP_INTERVAL_SECONDS: int = 1800

    # Watch renewal scheduling (Gmail watches live at most 7 days)
    WATCH_RENEWAL_INTERVAL_SECONDS: int = 6 * 24 * 60 * 60
    WATCH_RECONCILE_INTERVAL_SECONDS: int = 6 * 60 * 60
    WATCH_RECONCILE_MARGIN_SECONDS: int = 24 * 60 * 60

    # Job queue
    JOB_MAX_ATTEMPTS: int = 3
    JOB_RETRY_BASE_SECONDS: int = 30
    JOB_RETRY_MAX_SECONDS: int = 15 * 60
    JOB_STALE_AFTER_SECONDS: int = 10 * 60

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10
    WORKER_CONCURRENCY: int = 4
    WORKER_SCHEDULE_SWEEPS: bool = True

    # Gmail webhook
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 64 * 1024

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    @property
    def gmail_push_label_ids(self) -> list[str]:
        """Parse GMAIL_PUSH_LABEL_IDS into a de-duplicated list."""
        out: list[str] = []
        for item in self.GMAIL_PUSH_LABEL_IDS.split(","):
            token = item.strip()
            if token and token not in out:
                out.append(token)
        return out

    @property
    def token_refresh_sweep_window_seconds(self) -> int:
        """Sweep look-ahead; never shorter than one interval plus the refresh lead."""
        floor = self.TOKEN_REFRESH_SWEEP_INTERVAL_SECONDS + self.TOKEN_REFRESH_LEAD_SECONDS
        return max(self.TOKEN_REFRESH_SWEEP_WINDOW_SECONDS, floor)

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


settings = Settings()
