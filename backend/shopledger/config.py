# backend/shopledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/shopledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///shopledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "INR")

    # Basis points (1800 = 18.00% GST)
    TAX_RATE_BPS = int(os.environ.get("TAX_RATE_BPS", "1800"))

    # Failed payment attempts may be re-opened this many times
    PAYMENT_MAX_RETRIES = int(os.environ.get("PAYMENT_MAX_RETRIES", "3"))

    # Outbound gateway calls (capture/void/refund)
    GATEWAY_RETRY_ATTEMPTS = int(os.environ.get("GATEWAY_RETRY_ATTEMPTS", "3"))
    GATEWAY_RETRY_BACKOFF = float(os.environ.get("GATEWAY_RETRY_BACKOFF", "0.2"))

    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    TAX_RATE_BPS = 1800
    GATEWAY_RETRY_BACKOFF = 0.0
