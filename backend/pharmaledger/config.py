# backend/pharmaledger/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite file next to the instance by default; any SQLAlchemy URL works
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///pharmaledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Transaction retry on lock / optimistic-version failures
    STOCK_RETRY_ATTEMPTS = int(os.environ.get("STOCK_RETRY_ATTEMPTS", "3"))
    STOCK_RETRY_BACKOFF_SECONDS = float(os.environ.get("STOCK_RETRY_BACKOFF_SECONDS", "0.1"))

    # Lots expiring within this window are flagged as NEAR_EXPIRY
    LOT_EXPIRY_ALERT_DAYS = int(os.environ.get("LOT_EXPIRY_ALERT_DAYS", "30"))

    SYNC_MAX_BATCH_SIZE = int(os.environ.get("SYNC_MAX_BATCH_SIZE", "500"))
    MOVEMENT_PAGE_SIZE_MAX = int(os.environ.get("MOVEMENT_PAGE_SIZE_MAX", "100"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
