from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database / secrets
    DATABASE_URL: str | None = None
    JWT_SECRET: str | None = None
    CRON_SECRET: str | None = None
    TOKEN_ENCRYPTION_KEY: str | None = None
    BID_PORTAL_SECRET: str | None = None

    # Application URLs
    APP_BASE_URL: str = "http://localhost:3000"  # Default for development
    API_BASE_URL: str = "http://localhost:8000"
    FRONTEND_URL: str | None = None

    # QuickBooks Online OAuth configuration
    QBO_CLIENT_ID: str | None = None
    QBO_CLIENT_SECRET: str | None = None
    QBO_SCOPES: str = "com.intuit.quickbooks.accounting"
    QBO_REDIRECT_PATH: str = "/api/v1/integrations/qbo/callback"
    QBO_MINOR_VERSION: int = 65

    # QuickBooks token lifecycle
    QBO_TOKEN_REFRESH_WINDOW_MINUTES: int = 10
    QBO_REFRESH_FAILURE_THRESHOLD: int = 3
    QBO_KEEPALIVE_HORIZON_DAYS: int = 30
    QBO_KEEPALIVE_BATCH_SIZE: int = 10
    QBO_REQUEST_TIMEOUT: int = 30

    # Outbox worker
    OUTBOX_MAX_RETRIES: int = 3
    OUTBOX_BACKOFF_BASE: int = 3
    OUTBOX_BACKOFF_UNIT_MINUTES: int = 5
    OUTBOX_BATCH_SIZE: int = 5
    QBO_OUTBOX_BATCH_SIZE: int = 25
    OUTBOX_JOB_TIMEOUT_SECONDS: int = 120  # 2 minutes
    OUTBOX_PROCESSING_TIMEOUT_MINUTES: int = 20

    # External portal
    EXTERNAL_PORTAL_SESSION_TTL_DAYS: int = 30
    PASSWORD_BCRYPT_ROUNDS: int = 10
    PIN_MAX_ATTEMPTS: int = 5
    PIN_LOCKOUT_MINUTES: int = 15

    # Email delivery (Resend)
    RESEND_API_KEY: str | None = None
    RESEND_FROM_EMAIL: str = "Arc <notifications@arcnaples.com>"

    # Drawings tile worker
    DRAWINGS_TILE_WORKER_URL: str | None = None
    DRAWINGS_TILE_WORKER_SECRET: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def qbo_redirect_uri(self) -> str:
        return f"{self.API_BASE_URL.rstrip('/')}{self.QBO_REDIRECT_PATH}"

    @property
    def qbo_api_base_url(self) -> str:
        if self.is_production:
            return "https://quickbooks.api.intuit.com/v3/company"
        return "https://sandbox-quickbooks.api.intuit.com/v3/company"


settings = Settings()
