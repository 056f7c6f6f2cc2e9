"""
Runtime configuration for the pet tag API.

Everything comes from environment variables and is read once at startup.
"""

import logging
import os
import sys
from typing import Optional

from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: str = "pettag"
    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_minutes: int = 60 * 24
    tag_price: float = Field(15.99, ge=0)
    currency: str = "USD"
    tax_rate: float = Field(0.08, ge=0)
    free_shipping_threshold: float = 50.0
    shipping_fee: float = 10.0
    frontend_url: str = "http://localhost:3000"
    qr_base_url: str = "http://localhost:3000/found/"
    notify_on_reactivation: bool = False
    stripe_secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME", "pettag"),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_expires_minutes=int(os.getenv("JWT_EXPIRES_MINUTES", 60 * 24)),
            tag_price=float(os.getenv("TAG_PRICE", 15.99)),
            currency=os.getenv("CURRENCY", "USD"),
            tax_rate=float(os.getenv("TAX_RATE", 0.08)),
            free_shipping_threshold=float(os.getenv("FREE_SHIPPING_THRESHOLD", 50)),
            shipping_fee=float(os.getenv("SHIPPING_FEE", 10.0)),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            qr_base_url=os.getenv("QR_BASE_URL", "http://localhost:3000/found/"),
            notify_on_reactivation=_env_bool("NOTIFY_ON_REACTIVATION"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def setup_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(h, "_pettag", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._pettag = True  # checked above
    root.addHandler(handler)


settings = Settings.from_env()
