"""
Permit Portal Sync Core
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Store credentials (portal store and the two partner stores) are not part of
the Flask config: they are read from the environment at call time through
``resolve_store_credentials()`` so that a missing key fails the individual
store call instead of the whole application boot.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'permit_portal_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy (local ProjectLink table only)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Backend stores
    STORE_REQUEST_TIMEOUT = int(os.getenv("STORE_REQUEST_TIMEOUT", "30"))
    PORTAL_STORE_PROXY_URL = os.getenv("PORTAL_STORE_PROXY_URL", "")

    # Rate limiting on the same-origin store proxy
    RATELIMIT_ENABLED = os.getenv("RATELIMIT_ENABLED", "true").lower() == "true"
    STORE_PROXY_RATE_LIMIT = os.getenv("STORE_PROXY_RATE_LIMIT", "120 per minute")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS: dict = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


# ── Store credentials ─────────────────────────────────────────────────────

# system -> (label, url env chain, key env chain); first non-blank value wins
STORE_ENV_CHAINS: dict[str, tuple[str, tuple[str, ...], tuple[str, ...]]] = {
    "portal": (
        "Supabase",
        ("VITE_SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL", "SUPABASE_URL"),
        (
            "VITE_SUPABASE_ANON_KEY",
            "NEXT_PUBLIC_SUPABASE_ANON_KEY",
            "SUPABASE_ANON_KEY",
            "SUPABASE_PUBLIC_ANON_KEY",
        ),
    ),
    "permitflow": (
        "PermitFlow",
        ("PERMITFLOW_SUPABASE_URL", "NEXT_PUBLIC_PERMITFLOW_SUPABASE_URL"),
        ("PERMITFLOW_SUPABASE_ANON_KEY", "NEXT_PUBLIC_PERMITFLOW_SUPABASE_ANON_KEY"),
    ),
    "reviewworks": (
        "ReviewWorks",
        ("REVIEWWORKS_SUPABASE_URL", "NEXT_PUBLIC_REVIEWWORKS_SUPABASE_URL"),
        ("REVIEWWORKS_SUPABASE_ANON_KEY", "NEXT_PUBLIC_REVIEWWORKS_SUPABASE_ANON_KEY"),
    ),
}


@dataclass(frozen=True)
class StoreCredentials:
    """Resolved connection settings for one backend store."""

    system: str
    label: str
    base_url: str | None
    api_key: str | None
    url_var: str
    key_var: str

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)


def _env_first(*names: str) -> str | None:
    """Return the first non-blank (trimmed) environment value among *names*."""
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def resolve_store_credentials(system: str) -> StoreCredentials:
    """Read the URL / anon key for *system* from the environment.

    Raises:
        KeyError: If *system* is not one of the known stores.
    """
    label, url_chain, key_chain = STORE_ENV_CHAINS[system]
    base_url = _env_first(*url_chain)
    return StoreCredentials(
        system=system,
        label=label,
        base_url=base_url.rstrip("/") if base_url else None,
        api_key=_env_first(*key_chain),
        url_var=url_chain[0],
        key_var=key_chain[0],
    )
