"""
config.py
Runtime settings read from the environment (and an optional .env file).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from errors import ConfigError

DEFAULT_DB_FILE = Path(__file__).with_name("gym.db")


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB_FILE
    db_timeout: float = 5.0
    max_retries: int = 3
    reset_paid_on_expiry: bool = True
    gym_name: str = "Gym"
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_sender: str | None = None
    smtp_use_tls: bool = True
    log_level: str = "INFO"


def _bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _number(env, key: str, default, cast):
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc


def load_settings(env=None) -> Settings:
    """
    Build Settings from GYM_* variables.
    When no mapping is passed, the process environment is used (after loading .env).
    """
    if env is None:
        load_dotenv()
        env = os.environ

    max_retries = _number(env, "GYM_MAX_RETRIES", Settings.max_retries, int)
    if max_retries < 1:
        raise ConfigError("GYM_MAX_RETRIES must be at least 1")

    return Settings(
        db_path=Path(env.get("GYM_DB_PATH") or DEFAULT_DB_FILE),
        db_timeout=_number(env, "GYM_DB_TIMEOUT", Settings.db_timeout, float),
        max_retries=max_retries,
        reset_paid_on_expiry=_bool(env.get("GYM_RESET_PAID_ON_EXPIRY", "1")),
        gym_name=env.get("GYM_NAME", Settings.gym_name),
        smtp_host=env.get("GYM_SMTP_HOST") or None,
        smtp_port=_number(env, "GYM_SMTP_PORT", Settings.smtp_port, int),
        smtp_user=env.get("GYM_SMTP_USER") or None,
        smtp_password=env.get("GYM_SMTP_PASSWORD") or None,
        smtp_sender=env.get("GYM_SMTP_SENDER") or env.get("GYM_SMTP_USER") or None,
        smtp_use_tls=_bool(env.get("GYM_SMTP_TLS", "1")),
        log_level=env.get("GYM_LOG_LEVEL", Settings.log_level).upper(),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
