import os
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"


class Settings(BaseModel):
    database_url: str = "sqlite:///./storefront.db"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_success_url: str = "http://localhost:3000/orders/success"
    stripe_cancel_url: str = "http://localhost:3000/cart"
    currency: str = "usd"
    allowed_shipping_countries: List[str] = ["US", "CA"]
    webhook_tolerance: int = 300

    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    finalization_max_attempts: int = 3
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build the settings object from .env and the process environment."""
    load_dotenv(dotenv_path=ENV_PATH)

    defaults = Settings()
    countries = os.getenv("STRIPE_SHIPPING_COUNTRIES")
    return Settings(
        database_url=os.getenv("DATABASE_URL") or defaults.database_url,
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        stripe_success_url=os.getenv("STRIPE_SUCCESS_URL", defaults.stripe_success_url),
        stripe_cancel_url=os.getenv("STRIPE_CANCEL_URL", defaults.stripe_cancel_url),
        currency=os.getenv("CURRENCY", defaults.currency),
        allowed_shipping_countries=(
            [c.strip().upper() for c in countries.split(",") if c.strip()]
            if countries else defaults.allowed_shipping_countries
        ),
        webhook_tolerance=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", defaults.webhook_tolerance)),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", defaults.jwt_algorithm),
        finalization_max_attempts=int(
            os.getenv("FINALIZATION_MAX_ATTEMPTS", defaults.finalization_max_attempts)
        ),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
