"""Environment backed configuration for the tracker."""
from __future__ import annotations

import os
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, field_validator

ENV_PREFIX = "VISITOR_TRACKER_"
DEFAULT_RETENTION_DAYS = 365
DEFAULT_EXCLUDED_ROLES = frozenset({"administrator"})
_TRUE_VALUES = {"1", "true", "yes", "on"}


class TrackerSettings(BaseModel):
    """Tracking policy, read fresh for every operation."""

    model_config = ConfigDict(frozen=True)

    track_guests: bool = True
    anonymize_ip: bool = True
    retention_days: int = DEFAULT_RETENTION_DAYS
    excluded_roles: FrozenSet[str] = DEFAULT_EXCLUDED_ROLES

    @field_validator("retention_days", mode="before")
    @classmethod
    def _clamp_retention(cls, value: object) -> int:
        try:
            days = int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            days = DEFAULT_RETENTION_DAYS
        return max(1, days)

    @field_validator("excluded_roles", mode="before")
    @classmethod
    def _clean_roles(cls, value: object) -> FrozenSet[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(str(role).strip() for role in value if str(role).strip())


def _env(name: str) -> Optional[str]:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_flag(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    return int(value)


def load_settings() -> TrackerSettings:
    roles = os.environ.get(ENV_PREFIX + "EXCLUDED_ROLES")
    return TrackerSettings(
        track_guests=_env_flag("TRACK_GUESTS", True),
        anonymize_ip=_env_flag("ANONYMIZE_IP", True),
        retention_days=_env("RETENTION_DAYS") or DEFAULT_RETENTION_DAYS,
        excluded_roles=DEFAULT_EXCLUDED_ROLES if roles is None else roles,
    )


def get_database_url() -> str:
    return _env("DATABASE_URL") or "sqlite:///./visitor_tracker.db"


def get_site_secret() -> Optional[str]:
    return _env("SECRET_KEY")


def get_session_secret() -> Optional[str]:
    """Secret used to sign ``tgfg_session`` cookies.

    Falls back to the site-wide secret key when no dedicated secret is set.
    """

    return _env("SESSION_SECRET") or get_site_secret()


def get_site_url() -> str:
    return _env("SITE_URL") or "http://localhost/"


def get_retention_interval_seconds() -> int:
    return _env_int("RETENTION_INTERVAL_SECONDS", 24 * 60 * 60)


def get_stats_rate_limit() -> tuple[int, int]:
    return _env_int("STATS_RATE_LIMIT", 60), _env_int("STATS_RATE_WINDOW", 60)


def get_log_level() -> str:
    return (_env("LOG_LEVEL") or "INFO").upper()
