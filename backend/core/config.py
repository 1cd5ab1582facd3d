import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Dict, Optional


DEFAULT_QUOTA_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {"scan": 30, "ai_question": 0, "export": 0},
    "premium": {"scan": -1, "ai_question": -1, "export": -1},
}

DEFAULT_QUOTA_PERIODS: Dict[str, str] = {
    "scan": "monthly",
    "ai_question": "daily",
    "export": "monthly",
}


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 0.5

    # App URLs
    API_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"

    # Quotas (-1 = unlimited)
    QUOTA_LIMITS: Dict[str, Dict[str, int]] = DEFAULT_QUOTA_LIMITS
    QUOTA_PERIODS: Dict[str, str] = DEFAULT_QUOTA_PERIODS
    QUOTA_LOCK_TTL_SECONDS: float = 5.0
    QUOTA_LOCK_WAIT_SECONDS: float = 0.25
    QUOTA_LOCK_POLL_SECONDS: float = 0.025
    QUOTA_BUSY_RETRIES: int = 2
    QUOTA_USAGE_RETENTION_DAYS: int = 7

    # Billing provider webhooks
    BILLING_WEBHOOK_SECRET: Optional[str] = None
    BILLING_REPLAY_WINDOW_SECONDS: int = 300
    BILLING_IDEMPOTENCY_RETENTION_DAYS: int = 30
    BILLING_ALLOW_RESUME_AFTER_PERIOD_END: bool = False
    BILLING_VARIANT_MONTHLY: Optional[str] = None
    BILLING_VARIANT_ANNUAL: Optional[str] = None
    BILLING_VARIANT_FAMILY_MONTHLY: Optional[str] = None

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
    log = logger or logging.getLogger("ecoscore")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "REDIS_URL",
        "BILLING_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    unknown_periods = sorted(
        {kind for kind in cfg.QUOTA_PERIODS.values()} - {"daily", "monthly"}
    )
    if unknown_periods:
        message = f"Unsupported quota period kinds: {', '.join(unknown_periods)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
