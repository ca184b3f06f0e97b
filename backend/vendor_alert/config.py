"""
Configuration settings for the Vendor Alert Shopify app
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App identification
    app_name: str = "Vendor Alert"
    app_version: str = "1.0.0"
    debug: bool = False

    # Shopify app credentials
    shopify_api_key: str
    shopify_api_secret: str
    shopify_api_version: str = "2025-04"
    shopify_scopes: str = "read_orders,read_products"

    # Database
    database_url: str

    # Redis (OAuth state)
    redis_url: str = "redis://localhost:6379"

    # Security
    encryption_key: str
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24

    # App URLs
    app_url: str = "https://vendor-alert.example.com"

    # Sync
    sync_batch_size: int = 50
    sync_retry_attempts: int = 1

    # Notification scheduler
    scheduler_enabled: bool = True
    notify_interval_seconds: int = 60
    notify_timezone: str = "UTC"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @property
    def async_database_url(self) -> str:
        """Database URL using an async driver."""
        url = self.database_url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://") and "+aiosqlite" not in url:
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
