"""Broker configuration loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed settings passed into every component that needs them."""

    # Read .env with BOM tolerance; case-sensitive keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Campaign Broker"
    ENV: str = "dev"  # dev | staging | prod
    DEBUG: bool = False

    # CORS
    CORS_ALLOWED_ORIGINS: list[str] = Field(default_factory=list)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_SERIALIZE: bool = True

    # DB
    DB_URL: str | None = Field(
        default=None, description="Full SQLAlchemy async URL; overrides DB_* parts"
    )
    DB_HOST: str = "127.0.0.1"
    DB_PORT: int = 3306
    DB_USER: str = "appadmin"
    DB_PASSWORD: str = ""  # set via env/.env
    DB_NAME: str = "crm"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_RETRY_ATTEMPTS: int = 4
    DB_RETRY_BASE_DELAY: float = 0.05
    DB_RETRY_JITTER: float = 0.025
    # Create missing tables at startup (local runs; production schemas are managed externally)
    DB_AUTO_CREATE: bool = False

    # Message bus. ``memory://`` keeps publish/subscribe inside the process.
    REDIS_URL: str = "redis://localhost:6379/0"
    # Run the bus listener and worker loops inside the API process (memory:// bus)
    EMBEDDED_BROKER: bool = False

    # Campaign delivery
    CAMPAIGN_DELIVERY_SUCCESS_RATE: float = Field(default=0.9, ge=0.0, le=1.0)
    CAMPAIGN_MAX_BATCH_SIZE: int = Field(default=100, ge=1)
    CAMPAIGN_PROCESSING_INTERVAL: float = Field(default=1.0, gt=0)
    SCHEDULED_CAMPAIGN_INTERVAL: float = Field(default=60.0, gt=0)
    DELIVERY_CLAIM_TIMEOUT_SEC: int = 300
    LOG_INSERT_BATCH_SIZE: int = 100

    # Segments
    SEGMENT_PREVIEW_SAMPLE_SIZE: int = 5
    # Unknown rule operators fall back to equality unless this is enabled.
    RULES_STRICT_OPERATORS: bool = False

    # Vendor gateway
    VENDOR_MODE: str = "simulated"  # simulated | http
    VENDOR_SEND_TIMEOUT_SEC: float = 10.0
    VENDOR_MAX_CONCURRENCY: int = 10
    VENDOR_LATENCY_MIN_MS: int = 50
    VENDOR_LATENCY_MAX_MS: int = 200

    # WhatsApp-style HTTP vendor (VENDOR_MODE=http)
    WBOX_API_BASE: str | None = Field(default=None, description="Vendor API base URL")
    WBOX_TOKEN: str | None = Field(default=None, description="Vendor API token/key")
    WBOX_CHANNEL_NUMBER: str | None = Field(default=None, description="Sender channel number")
    VENDOR_HTTP_MAX_THREADS: int = 4

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        return (
            f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4"
        )


settings = Settings()
