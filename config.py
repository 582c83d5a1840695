"""Configuration for the walk-in queue.

All settings are read from environment variables once, by
``Settings.from_env()``, and the resulting object is handed explicitly to
the store, the notification transports, the completion scheduler and the
FastAPI app.  Nothing below keeps credentials in module globals.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from pydantic import BaseModel


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "sqlite:///queue.db"
    redis_url: Optional[str] = None

    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None

    resend_api_key: Optional[str] = None
    email_from: str = "MT2.0 Queue <onboarding@resend.dev>"
    smtp_host: Optional[str] = None
    smtp_port: int = 25
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None

    default_country_code: str = "1"
    completion_delay_ms: int = 1000
    completion_worker_inline: bool = True
    business_name: str = "MT2.0 Queuing System"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL", "sqlite:///queue.db")
        # Hosted Postgres hands out postgres://, SQLAlchemy wants postgresql://
        if database_url.startswith("postgres://"):
            database_url = "postgresql://" + database_url[len("postgres://"):]
        return cls(
            database_url=database_url,
            redis_url=os.getenv("REDIS_URL") or None,
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
            twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER") or None,
            resend_api_key=os.getenv("RESEND_API_KEY") or None,
            email_from=os.getenv("EMAIL_FROM", "MT2.0 Queue <onboarding@resend.dev>"),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=int(os.getenv("SMTP_PORT", "25")),
            smtp_username=os.getenv("SMTP_USERNAME") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "1"),
            completion_delay_ms=int(os.getenv("COMPLETION_DELAY_MS", "1000")),
            completion_worker_inline=_env_bool("COMPLETION_WORKER_INLINE", True),
            business_name=os.getenv("BUSINESS_NAME", "MT2.0 Queuing System"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)

    @property
    def email_configured(self) -> bool:
        return bool(self.resend_api_key or self.smtp_host)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
