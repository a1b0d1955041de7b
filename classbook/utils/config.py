"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    app_name: str = "Classbook Scheduling Engine"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    database_path: Path = Path("data/classbook.db")
    admin_token: str | None = None

    # Store access
    store_timeout_seconds: float = 5.0

    # Instance generation
    schedule_timezone: str = "UTC"
    generation_horizon_weeks: int = 8
    generation_workers: int = 4

    # Booking
    booking_max_attempts: int = 5
    entitlement_debit_max_attempts: int = 5
    compensation_max_attempts: int = 5

    # Entitlements
    entitlement_tie_break: str = "soonest_expiry"
    expired_history_days: int = 30


def load_settings() -> Settings:
    """Build settings from environment variables, falling back to defaults."""
    defaults = Settings()
    admin_token = os.getenv("ADMIN_TOKEN") or None
    return Settings(
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        database_path=Path(
            os.getenv("CLASSBOOK_DATABASE_PATH", str(defaults.database_path))
        ),
        admin_token=admin_token,
        store_timeout_seconds=_env_float(
            "STORE_TIMEOUT_SECONDS", defaults.store_timeout_seconds
        ),
        schedule_timezone=os.getenv("SCHEDULE_TIMEZONE", defaults.schedule_timezone),
        generation_horizon_weeks=_env_int(
            "GENERATION_HORIZON_WEEKS", defaults.generation_horizon_weeks
        ),
        generation_workers=_env_int("GENERATION_WORKERS", defaults.generation_workers),
        booking_max_attempts=_env_int("BOOKING_MAX_ATTEMPTS", defaults.booking_max_attempts),
        entitlement_debit_max_attempts=_env_int(
            "ENTITLEMENT_DEBIT_MAX_ATTEMPTS", defaults.entitlement_debit_max_attempts
        ),
        compensation_max_attempts=_env_int(
            "COMPENSATION_MAX_ATTEMPTS", defaults.compensation_max_attempts
        ),
        entitlement_tie_break=os.getenv(
            "ENTITLEMENT_TIE_BREAK", defaults.entitlement_tie_break
        ),
        expired_history_days=_env_int("EXPIRED_HISTORY_DAYS", defaults.expired_history_days),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
