"""Runtime settings for the lab loan manager."""

import os
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # 空ならアプリ直下の data/lab.db
    APP_DB_PATH: str = os.getenv("APP_DB_PATH", "")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # セッション署名用
    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me-in-production")

    # Integrity monitor
    MONITOR_ENABLED: bool = _env_bool("MONITOR_ENABLED", True)
    MONITOR_INTERVAL_MINUTES: int = int(os.getenv("MONITOR_INTERVAL_MINUTES", "30"))
    MONITOR_NOTIFY_ADMINS: bool = _env_bool("MONITOR_NOTIFY_ADMINS", True)
    MONITOR_AUTO_CORRECT: bool = _env_bool("MONITOR_AUTO_CORRECT", False)
    LOW_AVAILABILITY_PERCENT: float = float(os.getenv("LOW_AVAILABILITY_PERCENT", "10"))
    ALERT_CAPACITY: int = int(os.getenv("ALERT_CAPACITY", "100"))

    # Loans
    DEFAULT_LOAN_DAYS: int = int(os.getenv("DEFAULT_LOAN_DAYS", "7"))


config = Config()
