import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    email_service_url: Optional[str] = None
    currency: str = "INR"
    free_shipping_threshold: float = 500
    flat_shipping_cost: float = 50
    gst_rate: float = 0.18
    return_window_days: int = 15
    max_buy_now_quantity: int = 10
    checkout_session_ttl_minutes: int = 30
    settled_checkout_ttl_minutes: int = 15
    http_timeout: float = 10.0
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_api_url=os.getenv("RAZORPAY_API_URL", cls.razorpay_api_url),
            email_service_url=os.getenv("EMAIL_SERVICE_URL"),
            currency=os.getenv("CURRENCY", cls.currency),
            free_shipping_threshold=_env_float("FREE_SHIPPING_THRESHOLD", cls.free_shipping_threshold),
            flat_shipping_cost=_env_float("FLAT_SHIPPING_COST", cls.flat_shipping_cost),
            gst_rate=_env_float("GST_RATE", cls.gst_rate),
            return_window_days=_env_int("RETURN_WINDOW_DAYS", cls.return_window_days),
            max_buy_now_quantity=_env_int("MAX_BUY_NOW_QUANTITY", cls.max_buy_now_quantity),
            checkout_session_ttl_minutes=_env_int("CHECKOUT_SESSION_TTL_MINUTES", cls.checkout_session_ttl_minutes),
            settled_checkout_ttl_minutes=_env_int("SETTLED_CHECKOUT_TTL_MINUTES", cls.settled_checkout_ttl_minutes),
            http_timeout=_env_float("HTTP_TIMEOUT", cls.http_timeout),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            port=_env_int("PORT", cls.port),
        )


settings = Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
