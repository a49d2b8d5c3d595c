"""
config.py
Settings loaded from the environment (and a local .env file).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    reminder_hour: int
    reminder_minute: int
    scheduler_enabled: bool
    sweep_on_startup: bool
    gateway_timeout_seconds: float
    webhook_secret: str | None
    admin_email: str
    admin_password: str
    default_reminder_price: int  # minor units


def load_settings() -> Settings:
    return Settings(
        db_path=Path(os.getenv("GYM_DB_PATH", str(Path(__file__).with_name("gym.db")))),
        timezone=os.getenv("GYM_TIMEZONE", "Africa/Lagos"),
        reminder_hour=int(os.getenv("GYM_REMINDER_HOUR", "9")),
        reminder_minute=int(os.getenv("GYM_REMINDER_MINUTE", "0")),
        scheduler_enabled=_env_bool("GYM_SCHEDULER_ENABLED", True),
        sweep_on_startup=_env_bool("GYM_SWEEP_ON_STARTUP", True),
        gateway_timeout_seconds=float(os.getenv("GYM_GATEWAY_TIMEOUT_SECONDS", "30")),
        webhook_secret=os.getenv("PAYSTACK_SECRET_KEY") or None,
        admin_email=os.getenv("GYM_ADMIN_EMAIL", "admin@gym.local").strip().lower(),
        admin_password=os.getenv("GYM_ADMIN_PASSWORD", "admin123"),
        default_reminder_price=int(os.getenv("GYM_DEFAULT_REMINDER_PRICE", "1550000")),
    )


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


settings = load_settings()
