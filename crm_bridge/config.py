from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./crm_bridge.db"
    STORE_TIMEOUT_SECONDS: float = 10.0

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Webhook Security - unset means signatures are not enforced (degraded mode)
    WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_SIGNATURE_HEADER: str = "X-Signature"

    # Entity defaults applied when instance metadata is not yet known
    DEFAULT_CHANNEL: str = "whatsapp"
    DEFAULT_DEPARTMENT_ID: Optional[str] = None

    # Ingestion mode: "sync" processes inline, "queue" defers to the worker
    INGEST_MODE: Literal["sync", "queue"] = "sync"

    # Queue Configuration - "memory" keeps envelopes in-process
    QUEUE_BACKEND: Literal["redis", "memory", "none"] = "redis"
    REDIS_URL: Optional[str] = None
    QUEUE_NAME: str = "crm_bridge:webhooks"
    QUEUE_PREFETCH: int = 5
    QUEUE_MAX_RETRIES: int = 3
    QUEUE_RETRY_BASE_DELAY: float = 1.0
    QUEUE_RETRY_MAX_DELAY: float = 30.0
    QUEUE_HANDLER_TIMEOUT: float = 30.0
    QUEUE_POLL_TIMEOUT: float = 1.0

    # Realtime fanout
    FANOUT_SEND_TIMEOUT: float = 2.0

    # Outbound gateway client
    GATEWAY_BASE_URL: Optional[str] = None
    GATEWAY_API_KEY: Optional[str] = None
    GATEWAY_TIMEOUT: float = 10.0
    GATEWAY_MAX_RETRIES: int = 3
    WEBHOOK_PUBLIC_URL: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
