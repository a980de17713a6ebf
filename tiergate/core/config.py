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

    # Kill switch: enforcement ships dormant. Either flag set to "true" enables it.
    SUBSCRIPTION_ENABLED: Optional[str] = None
    NEXT_PUBLIC_SUBSCRIPTION_ENABLED: Optional[str] = None

    # Days a past_due subscription keeps access after current_period_end
    GRACE_PERIOD_DAYS: int = 3

    # Grow (payment gateway)
    GROW_API_URL: Optional[str] = None
    GROW_USER_ID: Optional[str] = None
    GROW_WEBHOOK_KEY: Optional[str] = None

    # Morning (invoicing)
    MORNING_API_URL: Optional[str] = None
    MORNING_API_KEY: Optional[str] = None
    MORNING_API_SECRET: Optional[str] = None

    # Scheduled jobs
    CRON_SECRET: Optional[str] = None

    # App URLs
    APP_BASE_URL: str = "http://localhost:3000"
    INVOICE_PRODUCT_NAME: str = "Signatura"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def is_subscription_enabled(settings_obj: Optional[Settings] = None) -> bool:
    """Evaluate the kill switch.

    Returns False when both flags are unset, empty, or anything other than "true".
    """
    cfg = settings_obj or settings
    value = cfg.SUBSCRIPTION_ENABLED or cfg.NEXT_PUBLIC_SUBSCRIPTION_ENABLED or ""
    return value.strip().lower() == "true"


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("tiergate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "GROW_API_URL",
        "GROW_USER_ID",
        "GROW_WEBHOOK_KEY",
        "CRON_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
