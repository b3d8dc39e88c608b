from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DORC_DB_PATH", "dorc.db")
    poll_interval_s: int = _env_int("DORC_POLL_INTERVAL_S", 5)
    docker_network: str = os.getenv("DORC_DOCKER_NETWORK", "dorc")
    log_level: str = os.getenv("DORC_LOG_LEVEL", "INFO")

    # Action retries (exponential backoff between min and max seconds)
    retry_attempts: int = _env_int("DORC_RETRY_ATTEMPTS", 4)
    retry_min_s: float = _env_float("DORC_RETRY_MIN_S", 0.5)
    retry_max_s: float = _env_float("DORC_RETRY_MAX_S", 8.0)

    # Control API
    api_host: str = os.getenv("DORC_API_HOST", "0.0.0.0")
    api_port: int = _env_int("DORC_API_PORT", 8000)
    api_user: str | None = os.getenv("DORC_API_USER")
    api_password: str | None = os.getenv("DORC_API_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("DORC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DORC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DORC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DORC_SMTP_USER")
    smtp_password: str | None = os.getenv("DORC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DORC_EMAIL_FROM")
    email_to: str | None = os.getenv("DORC_EMAIL_TO")


settings = Settings()
