from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel

DEFAULT_JWT_SECRET = "replace-this-in-production"
DEV_FRONTEND_ORIGIN = "http://localhost:5173"


def env_text(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def env_int(name: str, default: int, lower: int, upper: int) -> int:
    raw = env_text(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(lower, min(upper, value))


def normalize_database_url(value: str | None) -> str:
    raw = (value or "").strip()
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    return raw


class Settings(BaseModel):
    app_env: str = "development"
    port: int = 5000
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_ttl_days: int = 7
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 30.0
    frontend_url: str | None = None
    database_url: str = ""
    auth_db_path: str = os.path.join("data", "ats_backend.db")
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    def cors_origins(self) -> list[str]:
        if self.is_production:
            return [self.frontend_url] if self.frontend_url else []
        return [DEV_FRONTEND_ORIGIN]


def load_settings() -> Settings:
    """Read process configuration once, after loading a local ``.env``."""
    load_dotenv()
    return Settings(
        app_env=env_text("APP_ENV", "development").lower(),
        port=env_int("PORT", 5000, 1, 65535),
        jwt_secret=env_text("JWT_SECRET", DEFAULT_JWT_SECRET),
        jwt_ttl_days=env_int("JWT_TTL_DAYS", 7, 1, 365),
        openai_api_key=env_text("OPENAI_API_KEY") or None,
        openai_model=env_text("OPENAI_MODEL", "gpt-4o-mini"),
        openai_timeout_seconds=float(env_int("OPENAI_TIMEOUT_SECONDS", 30, 5, 300)),
        frontend_url=env_text("FRONTEND_URL") or None,
        database_url=normalize_database_url(os.getenv("DATABASE_URL")),
        auth_db_path=env_text("AUTH_DB_PATH", os.path.join("data", "ats_backend.db")),
        log_level=env_text("LOG_LEVEL", "INFO").upper(),
    )
