"""
Application configuration and logging setup.

Settings are read from the environment (or a local .env file). Business
constants such as credit grants stay in the modules that own them.
"""

import logging
from typing import List

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings for the credits backend."""

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_ACCESS_PASS: str = ""
    STRIPE_PRICE_CROWBAR_MASTER: str = ""
    STRIPE_PRICE_CAREDUEL: str = ""
    STRIPE_PRICE_TALENTKONNECT: str = ""
    STRIPE_PRICE_ECOWORLDBUY: str = ""
    STRIPE_PRICE_POWEROFAUM: str = ""
    CHECKOUT_EXPIRY_MINUTES: int = 30
    FRONTEND_URL: str = "http://localhost:3000"

    # Partner bridge
    BRIDGE_SHARED_SECRET: str = ""

    # Database
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""

    # Email
    BREVO_API_KEY: str = ""
    BREVO_SENDER_EMAIL: str = "mail@crowbarltd.com"
    BREVO_SENDER_NAME: str = "Crowbar"
    SUPPORT_EMAIL: str = "support@crowbar.com"
    NOTIFICATION_TIMEOUT_SECONDS: float = 15.0

    # Partner redirect targets
    PARTNER_URLS: dict[str, str] = {
        "talentkonnect": "https://talentkonnect-redesign.vercel.app",
        "careduel": "https://careduel-redesign.vercel.app",
        "ecoworldbuy": "https://ecoworldbuy-redesign.vercel.app",
    }

    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "https://www.ecoworldbuy.com",
        "https://www.careduel.com",
        "https://www.talentkonnect.com",
    ]
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    def price_for(self, product: str) -> str:
        prices = {
            "access_pass": self.STRIPE_PRICE_ACCESS_PASS,
            "crowbar_master": self.STRIPE_PRICE_CROWBAR_MASTER,
            "careduel": self.STRIPE_PRICE_CAREDUEL,
            "talentkonnect": self.STRIPE_PRICE_TALENTKONNECT,
            "ecoworldbuy": self.STRIPE_PRICE_ECOWORLDBUY,
            "powerofaum": self.STRIPE_PRICE_POWEROFAUM,
        }
        return prices.get(product, "")


settings = Settings()


def configure_logging(level: str = None) -> None:
    """Configure structlog for JSON output with ISO timestamps."""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
