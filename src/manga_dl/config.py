"""Configuration from environment variables."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Service configuration loaded from environment."""

    # PostgreSQL DSN (required for server mode and most CLI commands)
    database_url: str | None = None

    # Quota policy
    registered_daily_limit: int = 50
    guest_limit: int = 10
    # "memory" keeps guest counts in this process only; "database" shares them
    guest_counter_backend: Literal["memory", "database"] = "memory"

    # Image host settings (the host rejects hotlinked requests without a referer)
    image_timeout: float = 15.0
    image_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )
    image_referer: str = "https://doujindesu.tv/"

    # PDF generation
    jpeg_quality: int = Field(80, ge=1, le=95)
    image_concurrency: int = Field(1, ge=1)  # 1 = one image in flight at a time
    document_timeout: float | None = Field(None, gt=0)  # Seconds; None = no overall limit

    # Identity provider userinfo endpoint used to verify bearer tokens
    auth_userinfo_url: str | None = None
    auth_timeout: float = 10.0

    # Shared secret expected in X-Webhook-Token (None = not checked)
    webhook_token: str | None = None

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = {"env_prefix": "MANGA_DL_", "env_file": ".env", "extra": "ignore"}


def get_settings() -> Settings:
    """Get a fresh settings instance."""
    return Settings()
