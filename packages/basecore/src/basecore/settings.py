"""
Settings for basecore.

All services read configuration from environment variables (or a local .env
file) through a single cached Settings instance.
"""

import functools

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Infrastructure
    DATABASE_URL: str = Field(default="sqlite:///./connector.db", description="SQLAlchemy URL")
    REDIS_URL: str = Field(default="", description="Redis URL for the event stream (empty disables)")
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = Field(default="text", description="text or json")

    # WhatsApp session gateway
    WHATSAPP_PROVIDER: str = Field(default="stub", description="evolution or stub")
    EVOLUTION_API_URL: str = ""
    EVOLUTION_API_KEY: str = ""
    EVOLUTION_WEBHOOK_URL: str = Field(default="", description="Our /webhook/evolution URL for new instances")
    WEBHOOK_INGRESS_KEY: str = Field(default="", description="API key expected on gateway webhooks")

    # Outbound delivery
    DRIP_MODE_ENABLED: bool = True
    DRIP_DELAY_MS: int = 1000
    QUEUE_DEFAULT_DELAY_MS: int = 5000
    QUEUE_MAX_ATTEMPTS: int = 3

    # Identity and origin tracking
    ORIGIN_TTL_SECONDS: float = 30.0
    ORIGIN_SWEEP_INTERVAL_SECONDS: float = 10.0
    LID_MATCH_WINDOW_SECONDS: int = 300

    # Connection lifecycle
    RECONNECT_DELAY_SECONDS: float = 5.0

    # Tenant webhooks
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_MAX_FAILURES: int = 10

    # CRM (GoHighLevel)
    CRM_API_URL: str = "https://services.leadconnectorhq.com"
    CRM_API_VERSION: str = "2021-07-28"
    CRM_TIMEOUT_SECONDS: float = 30.0

    ENCRYPTION_KEY: str = Field(default="", description="Fernet key for CRM tokens at rest")


@functools.lru_cache()
def get_settings() -> Settings:
    """Get settings (cached)."""
    return Settings()
