"""
Runtime settings for the authorization engine.

All values come from environment variables so the same build runs in
every environment. Settings are constructed explicitly by the composing
application (see accessgate.runtime) and passed down; nothing here is
cached at module level.

Usage:
    settings = Settings.from_env()
    timeout = settings.access_check_timeout_seconds
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parents[3] / "config" / "catalog.yml"


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def normalize_database_url(database_url: str) -> str:
    """Convert Render/Heroku style postgres:// URLs to postgresql://."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@dataclass(frozen=True)
class Settings:
    """Engine configuration."""

    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_audience: Optional[str] = None
    lifecycle_webhook_secret: Optional[str] = None
    catalog_path: str = str(DEFAULT_CATALOG_PATH)

    # Decision path
    access_check_timeout_ms: int = 250
    audit_denials: bool = True

    # Projection cache
    projection_cache_ttl_seconds: int = 300
    projection_max_staleness_seconds: int = 30
    projection_refresh_interval_seconds: int = 60
    projection_cache_max_entries: int = 10000

    # Licensing
    license_expiry_warning_days: int = 30

    # Database
    db_statement_timeout_ms: int = 0

    @property
    def access_check_timeout_seconds(self) -> float:
        return self.access_check_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables."""
        env = os.environ if env is None else env

        database_url = env.get("DATABASE_URL")
        if database_url:
            database_url = normalize_database_url(database_url)

        return cls(
            database_url=database_url,
            redis_url=env.get("REDIS_URL") or None,
            jwt_secret=env.get("ACCESSGATE_JWT_SECRET") or None,
            jwt_audience=env.get("ACCESSGATE_JWT_AUDIENCE") or None,
            lifecycle_webhook_secret=env.get("LIFECYCLE_WEBHOOK_SECRET") or None,
            catalog_path=env.get("CATALOG_PATH") or str(DEFAULT_CATALOG_PATH),
            access_check_timeout_ms=_int_env(env, "ACCESS_CHECK_TIMEOUT_MS", 250),
            audit_denials=_bool_env(env, "AUDIT_DENIALS", True),
            projection_cache_ttl_seconds=_int_env(env, "PROJECTION_CACHE_TTL_SECONDS", 300),
            projection_max_staleness_seconds=_int_env(env, "PROJECTION_MAX_STALENESS_SECONDS", 30),
            projection_refresh_interval_seconds=_int_env(
                env, "PROJECTION_REFRESH_INTERVAL_SECONDS", 60
            ),
            projection_cache_max_entries=_int_env(env, "PROJECTION_CACHE_MAX_ENTRIES", 10000),
            license_expiry_warning_days=_int_env(env, "LICENSE_EXPIRY_WARNING_DAYS", 30),
            db_statement_timeout_ms=_int_env(env, "DB_STATEMENT_TIMEOUT_MS", 0),
        )
