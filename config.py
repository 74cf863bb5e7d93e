"""
Runtime configuration for the Digital Life Lessons API.

Everything is read from environment variables. Required values are checked
once at startup so a misconfigured deployment fails before serving traffic.
"""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel

REQUIRED_ENV = ("DATABASE_URL", "FIREBASE_PROJECT_ID", "STRIPE_SECRET_KEY", "CLIENT_URL")

DEFAULT_ORIGINS = "http://localhost:5173,http://localhost:5174"


class Settings(BaseModel):
    database_url: str
    database_name: str = "digital-life-lessons"
    firebase_project_id: str
    stripe_secret_key: str
    stripe_webhook_secret: Optional[str] = None
    client_url: str
    allowed_origins: List[str] = []
    port: int = 8000
    log_level: str = "INFO"


def allowed_origins() -> List[str]:
    raw = os.getenv("ALLOWED_ORIGINS", DEFAULT_ORIGINS)
    return [o.strip() for o in raw.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    missing = [name for name in REQUIRED_ENV if not os.getenv(name)]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME", "digital-life-lessons"),
        firebase_project_id=os.getenv("FIREBASE_PROJECT_ID"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        client_url=os.getenv("CLIENT_URL").rstrip("/"),
        allowed_origins=allowed_origins(),
        port=int(os.getenv("PORT", 8000)),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
