from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "Realty Roles Core"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Paths
    BASE_DIR: str = "."
    SQLITE_DB_PATH: str = "data/roles.db"

    # Secrets
    SECRET_KEY: str  # For session signing
    IDENTITY_API_KEY: str
    IDENTITY_API_URL: str = "https://api.clerk.com/v1"
    IDENTITY_WEBHOOK_SECRET: str | None = None

    # Timeouts (seconds) applied to every external call
    IDENTITY_TIMEOUT_SECONDS: float = 10.0
    DB_TIMEOUT_SECONDS: float = 5.0

    # Retry policy for identity/database operations
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 0.5
    RETRY_MAX_DELAY_SECONDS: float = 8.0

    # Permission cache
    PERMISSION_CACHE_ENABLED: bool = True
    PERMISSION_CACHE_TTL_SECONDS: float = 120.0
    PERMISSION_CACHE_MAX_SIZE: int = 500

    # Cross-system synchronization
    SYNC_HISTORY_LIMIT: int = 10
    SYNC_MAX_RETRIES: int = 2
    CONTENT_SNAPSHOT_ATTEMPTS: int = 2
    IDENTITY_PAGE_SIZE: int = 100

    # Infrastructure
    REDIS_URL: str = "redis://redis:6379/0"
    SEQ_URL: str | None = None
    SEQ_API_KEY: str | None = None

    model_config = SettingsConfigDict(env_file="secrets/.env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
