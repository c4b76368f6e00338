from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: list[str] | None = None) -> list[str]:
    raw = _env_str(name)
    if not raw:
        return list(default or [])
    return [x.strip() for x in raw.split(",") if x.strip()]


class Config:
    def __init__(self):
        self.ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "0.1.0")

        self.HOST = _env_str("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5000)
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///portal.db")
        self.ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS", ["http://localhost:5173"])
        self.APP_TIMEZONE = _env_str("APP_TIMEZONE", "Asia/Kolkata")

        self.GOOGLE_CLIENT_ID = _env_str("GOOGLE_CLIENT_ID")
        self.AUTH_ALLOW_TEST_TOKENS = _env_bool("AUTH_ALLOW_TEST_TOKENS", False)
        self.SESSION_TTL_MINUTES = max(5, _env_int("SESSION_TTL_MINUTES", 720))

        # Requests per minute.
        self.RATE_LIMIT_GLOBAL = _env_int("RATE_LIMIT_GLOBAL", 1200)
        self.RATE_LIMIT_DEFAULT = _env_int("RATE_LIMIT_DEFAULT", 300)
        self.RATE_LIMIT_LOGIN = _env_int("RATE_LIMIT_LOGIN", 30)

        self.PERMISSIONS_UPSERT_MAX_BATCH = max(1, _env_int("PERMISSIONS_UPSERT_MAX_BATCH", 200))
        self.DEDUPE_TTL_SECONDS = max(1, _env_int("DEDUPE_TTL_SECONDS", 30))
        self.EVENT_QUEUE_MAX = max(1, _env_int("EVENT_QUEUE_MAX", 500))

        self.INTERNAL_CRON_TOKEN = _env_str("INTERNAL_CRON_TOKEN")
        self.ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", False)
        self.SCHEDULER_HOLD_EXPIRY_HOUR = max(0, min(23, _env_int("SCHEDULER_HOLD_EXPIRY_HOUR", 0)))
        self.SCHEDULER_HOLD_EXPIRY_MINUTE = max(0, min(59, _env_int("SCHEDULER_HOLD_EXPIRY_MINUTE", 10)))

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("Missing DATABASE_URL")
        if self.IS_PRODUCTION:
            if not self.GOOGLE_CLIENT_ID:
                raise RuntimeError("Missing GOOGLE_CLIENT_ID")
            if self.AUTH_ALLOW_TEST_TOKENS:
                raise RuntimeError("AUTH_ALLOW_TEST_TOKENS must be off in production")
