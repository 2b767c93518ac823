"""
Household Coordinator — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Operator bot (hosts the job queue)
    TELEGRAM_BOT_TOKEN: str

    # Identity exchange — HS256 custom tokens
    IDENTITY_SIGNING_KEY: str
    IDENTITY_ISSUER: str = "household-coordinator"
    CUSTOM_TOKEN_TTL_MINUTES: int = 60

    # Document store (SQLite)
    DATABASE_PATH: str = "data/household.db"

    # Push transport — FCM HTTP v1 (dispatch disabled when unset)
    FCM_PROJECT_ID: str = ""
    FCM_CREDENTIALS_PATH: str = ""

    # Security
    ALLOWED_USER_IDS: list[int] = []

    # Scheduling — all cadences share one time zone
    TIMEZONE: str = "Europe/Helsinki"
    QR_ROTATION_HOUR: int = 2
    REPEAT_RULES_HOUR: int = 3
    DUE_SOON_INTERVAL_MINUTES: int = 15
    DUE_SOON_WINDOW_MINUTES: int = 15
    DUE_SOON_TITLE: str = "Tehtävä erääntyy pian"
    DUE_SOON_BODY: str = "Muistutus: tarkista tämän päivän tehtävät"

    # QR tokens
    QR_TOKEN_BYTES: int = 16

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "CUSTOM_TOKEN_TTL_MINUTES",
        "QR_ROTATION_HOUR",
        "REPEAT_RULES_HOUR",
        "DUE_SOON_INTERVAL_MINUTES",
        "DUE_SOON_WINDOW_MINUTES",
        "QR_TOKEN_BYTES",
        mode="before",
    )
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        return int(v)


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    signing_key = os.getenv("IDENTITY_SIGNING_KEY", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not signing_key or signing_key.startswith("your-"):
        print("ERROR: IDENTITY_SIGNING_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        IDENTITY_SIGNING_KEY=signing_key,
        IDENTITY_ISSUER=os.getenv("IDENTITY_ISSUER", "household-coordinator"),
        CUSTOM_TOKEN_TTL_MINUTES=os.getenv("CUSTOM_TOKEN_TTL_MINUTES", "60"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/household.db"),
        FCM_PROJECT_ID=os.getenv("FCM_PROJECT_ID", ""),
        FCM_CREDENTIALS_PATH=os.getenv("FCM_CREDENTIALS_PATH", ""),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "Europe/Helsinki"),
        QR_ROTATION_HOUR=os.getenv("QR_ROTATION_HOUR", "2"),
        REPEAT_RULES_HOUR=os.getenv("REPEAT_RULES_HOUR", "3"),
        DUE_SOON_INTERVAL_MINUTES=os.getenv("DUE_SOON_INTERVAL_MINUTES", "15"),
        DUE_SOON_WINDOW_MINUTES=os.getenv("DUE_SOON_WINDOW_MINUTES", "15"),
        DUE_SOON_TITLE=os.getenv("DUE_SOON_TITLE", "Tehtävä erääntyy pian"),
        DUE_SOON_BODY=os.getenv("DUE_SOON_BODY", "Muistutus: tarkista tämän päivän tehtävät"),
        QR_TOKEN_BYTES=os.getenv("QR_TOKEN_BYTES", "16"),
    )


# Singleton — imported by the host process as:
#   from src.config import settings
settings = _load_settings()
