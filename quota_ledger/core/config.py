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

    # Quota windows
    QUOTA_RESET_TIMEZONE: str = "UTC"  # calendar used for daily resets
    PLAN_LIMITS_FILE: Optional[str] = None  # JSON {plan: {dimension: limit}}, -1 = unlimited
    GATE_MAX_CAS_ROUNDS: int = 5
    GATE_GRANT_REPLAY_SECONDS: int = 300  # a grant_id only replays while this young
    GATE_MAX_GRANT_REPLAYS: int = 3  # echoes per grant_id after the original grant

    # Store retries (tenacity)
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_MIN_WAIT_SECONDS: float = 0.05
    STORE_RETRY_MAX_WAIT_SECONDS: float = 2.0

    # Stripe (payment records + subscription price lookup)
    STRIPE_SECRET_KEY: Optional[str] = None

    # Admin access for direct credit and plan overrides
    ADMIN_KEY: Optional[str] = None

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
    log = logger or logging.getLogger("quota_ledger")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.STORE_RETRY_ATTEMPTS < 1:
        message = "STORE_RETRY_ATTEMPTS must be at least 1"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
