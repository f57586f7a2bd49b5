"""
Approval Routing Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'approval_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Logging: LOG_FORMAT is "json", "readable" or "" (pick by environment)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "")

    # Organization tree
    ORG_MAX_DEPTH = int(os.getenv("ORG_MAX_DEPTH", "4"))

    # Approval routing
    APPROVAL_DEFAULT_TIMEOUT_HOURS = int(os.getenv("APPROVAL_DEFAULT_TIMEOUT_HOURS", "24"))
    APPROVAL_DEFAULT_TIMEOUT_POLICY = os.getenv("APPROVAL_DEFAULT_TIMEOUT_POLICY", "reject")
    APPROVAL_MAX_ESCALATIONS = int(os.getenv("APPROVAL_MAX_ESCALATIONS", "3"))
    APPROVAL_TIMEOUT_SWEEP_MINUTES = int(os.getenv("APPROVAL_TIMEOUT_SWEEP_MINUTES", "5"))
    # Only roles flagged is_leadership may approve steps
    APPROVAL_LEADERSHIP_ONLY = os.getenv("APPROVAL_LEADERSHIP_ONLY", "false").lower() == "true"


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
    # In-memory SQLite does not accept pool sizing arguments
    SQLALCHEMY_ENGINE_OPTIONS = {}
    ORG_MAX_DEPTH = 4
    APPROVAL_DEFAULT_TIMEOUT_HOURS = 24
    APPROVAL_DEFAULT_TIMEOUT_POLICY = "reject"
    APPROVAL_MAX_ESCALATIONS = 3
    APPROVAL_LEADERSHIP_ONLY = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

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
