# backend/materials/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/materials.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///materials.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Bulk movements without an explicit location land here
    INVENTORY_DEFAULT_LOCATION = os.environ.get("INVENTORY_DEFAULT_LOCATION", "MAIN")

    # Backdated transactions are fine, future ones beyond clock skew are not
    TRANSACTION_FUTURE_SKEW_SECONDS = int(os.environ.get("TRANSACTION_FUTURE_SKEW_SECONDS", "120"))

    # Re-price matching products whenever a discount is created or edited
    DISCOUNTS_APPLY_ON_SAVE = _env_bool("DISCOUNTS_APPLY_ON_SAVE", True)

    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("CONCURRENCY_RETRY_ATTEMPTS", "3"))
    CONCURRENCY_RETRY_BACKOFF = float(os.environ.get("CONCURRENCY_RETRY_BACKOFF", "0.1"))
