# backend/keyflow/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/keyflow.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///keyflow.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Keys expire this many days after minting / activation (two years)
    KEY_VALIDITY_DAYS = int(os.environ.get("KEY_VALIDITY_DAYS", "730"))
    DEFAULT_KEY_LENGTH = int(os.environ.get("DEFAULT_KEY_LENGTH", "16"))

    # Retry policy for lock contention on atomic ledger operations
    TX_RETRY_ATTEMPTS = int(os.environ.get("TX_RETRY_ATTEMPTS", "5"))
    TX_RETRY_BACKOFF = float(os.environ.get("TX_RETRY_BACKOFF", "0.05"))

    # bcrypt cost factor; tests lower it
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

    # Browser origins allowed to call the API (comma separated)
    CORS_ALLOWED_ORIGINS = tuple(
        origin.strip()
        for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",")
        if origin.strip()
    )

    # Bearer session lifetime
    SESSION_ABSOLUTE_HOURS = int(os.environ.get("SESSION_ABSOLUTE_HOURS", "24"))
    SESSION_IDLE_MINUTES = int(os.environ.get("SESSION_IDLE_MINUTES", "120"))
