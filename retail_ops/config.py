"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)

FALLBACK_JWT_SECRET: Final[str] = "dev-secret"


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _str_to_set(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "retail_ops.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Retail Operations")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    STORE_RETRY_ATTEMPTS: Final[int] = int(os.getenv("STORE_RETRY_ATTEMPTS", "2"))
    STORE_RETRY_BASE_DELAY: Final[float] = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.4"))

    # Sessions
    JWT_SECRET: Final[str] = os.getenv("JWT_SECRET", FALLBACK_JWT_SECRET)
    SESSION_DAYS: Final[int] = int(os.getenv("SESSION_DAYS", "30"))
    SESSION_COOKIE_NAME: Final[str] = os.getenv("SESSION_COOKIE_NAME", "fenix_session")
    SESSION_COOKIE_SECURE: Final[bool] = _str_to_bool(
        os.getenv("SESSION_COOKIE_SECURE"), default=APP_ENV == "production"
    )
    MIN_PASSWORD_LENGTH: Final[int] = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))

    # Authorization policy knobs
    AUTHZ_DEFAULT_ALLOW_UNMAPPED: Final[bool] = _str_to_bool(
        os.getenv("AUTHZ_DEFAULT_ALLOW_UNMAPPED"), default=True
    )
    FINANCIAL_CONTROL_IDS: Final[frozenset[str]] = _str_to_set(os.getenv("FINANCIAL_CONTROL_IDS"))

    # Orders & logistics
    BUSINESS_TIMEZONE: Final[str] = os.getenv("BUSINESS_TIMEZONE", "America/La_Paz")
    MAX_ORDER_ITEMS: Final[int] = int(os.getenv("MAX_ORDER_ITEMS", "10"))
    DEFAULT_MAX_LOAD: Final[int] = int(os.getenv("DEFAULT_MAX_LOAD", "10"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")

    @classmethod
    def validate(cls) -> None:
        """Refuse to boot a production app signing sessions with the fallback secret."""
        if cls.APP_ENV == "production" and cls.JWT_SECRET == FALLBACK_JWT_SECRET:
            raise RuntimeError("JWT_SECRET is not set; configure it before deploying.")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        cls.validate()
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
