# backend/tpvcore/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key. Also signs back-office context tokens.
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///tpvcore.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Back-office context tokens are issued by the admin login flow
    BACKOFFICE_TOKEN_MAX_AGE = int(os.environ.get("BACKOFFICE_TOKEN_MAX_AGE", str(8 * 60 * 60)))

    # Receipt series assigned to freshly activated terminals
    DEFAULT_RECEIPT_SERIES = os.environ.get("DEFAULT_RECEIPT_SERIES", "FS")

    # bcrypt cost factor for operator PINs
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
