# config.py
import os
from dataclasses import dataclass
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: str = "true") -> bool:
    return os.getenv(key, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Assignment offers (seconds). A pending offer older than this is swept as a reject.
    OFFER_EXPIRY_SECONDS: int = int(os.getenv("OFFER_EXPIRY_SECONDS", "180"))
    SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "20"))
    AUTO_REOFFER: bool = env_bool("AUTO_REOFFER", "true")

    # Ledgers
    DELIVERY_JOB_EARNING: Decimal = Decimal(os.getenv("DELIVERY_JOB_EARNING", "25"))
    REFERRAL_COMMISSION_PERCENT: Decimal = Decimal(os.getenv("REFERRAL_COMMISSION_PERCENT", "5"))

    # Store retries (caller side, bounded exponential backoff)
    STORE_RETRY_ATTEMPTS: int = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
    STORE_RETRY_BASE_DELAY: float = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.2"))
    STORE_RETRY_MAX_DELAY: float = float(os.getenv("STORE_RETRY_MAX_DELAY", "2.0"))

    # Two-phase confirmation for destructive actions
    CONFIRMATION_SECRET: str = os.getenv("CONFIRMATION_SECRET", "change-me")
    CONFIRMATION_TTL_SECONDS: int = int(os.getenv("CONFIRMATION_TTL_SECONDS", "120"))

    THROTTLE_INTERVAL: float = float(os.getenv("THROTTLE_INTERVAL", "0.5"))


settings = Settings()
