import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Blob store (newsletter HTML bodies)
    BLOB_STORE_ROOT: str = "./var/blobs"
    BLOB_PUBLIC_BASE_URL: Optional[str] = None

    # Storage quotas (free plan)
    UNLOCKED_NEWSLETTERS_CAP: int = 1000
    HARD_NEWSLETTERS_CAP: int = 2000

    # AI summaries
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"
    AI_TIMEOUT_MS: int = 25000
    AI_DAILY_LIMIT: int = 50
    AI_COOLDOWN_SECONDS: int = 60
    AI_LOCK_TTL_SECONDS: int = 120
    AI_MAX_CONTENT_CHARS: int = 15000

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRO_MONTHLY_PRICE_ID: Optional[str] = None
    STRIPE_PRO_ANNUAL_PRICE_ID: Optional[str] = None

    # App URLs
    SITE_URL: str = "http://localhost:3000"

    # Auth
    CLERK_SECRET_KEY: Optional[str] = None
    INGEST_API_KEY: Optional[str] = None  # shared secret for the mail pipeline

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("letterbox")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "GROQ_API_KEY",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "INGEST_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
