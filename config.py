from __future__ import annotations

import os
import re


def _env(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name) or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _parse_csv(value: str) -> list[str]:
    return [s.strip() for s in str(value or "").split(",") if s.strip()]


_RATE_RE = re.compile(r"^\d+/\d+$")


class Config:
    def __init__(self):
        self.ENV = _env("APP_ENV", _env("ENV", "development")).lower()
        self.IS_PRODUCTION = self.ENV in {"prod", "production"}
        self.APP_VERSION = _env("APP_VERSION", "1.0.0")
        self.APP_TIMEZONE = _env("APP_TIMEZONE", "UTC")

        self.HOST = _env("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5002)
        self.LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()

        self.DATABASE_URL = _env("DATABASE_URL", "sqlite:///./perf_engine.db")
        self.DB_POOL_SIZE = _env_int("DB_POOL_SIZE", 10)
        self.DB_MAX_OVERFLOW = _env_int("DB_MAX_OVERFLOW", 20)
        self.DB_POOL_RECYCLE_SEC = _env_int("DB_POOL_RECYCLE_SEC", 1800)

        self.ALLOWED_ORIGINS = _parse_csv(_env("ALLOWED_ORIGINS", "http://localhost:5173"))

        self.GOOGLE_CLIENT_ID = _env("GOOGLE_CLIENT_ID", "test-client-id")
        self.AUTH_ALLOW_TEST_TOKENS = _env_bool("AUTH_ALLOW_TEST_TOKENS", False)
        self.SESSION_TTL_MINUTES = _env_int("SESSION_TTL_MINUTES", 480)

        self.RATE_LIMIT_GLOBAL = _env("RATE_LIMIT_GLOBAL", "600/60")
        self.RATE_LIMIT_DEFAULT = _env("RATE_LIMIT_DEFAULT", "120/60")
        self.RATE_LIMIT_LOGIN = _env("RATE_LIMIT_LOGIN", "20/60")

        self.CELERY_ENABLED = _env_bool("CELERY_ENABLED", False)
        self.REDIS_URL = _env("REDIS_URL", "")
        self.CELERY_RESULT_BACKEND = _env("CELERY_RESULT_BACKEND", self.REDIS_URL)
        self.NOTIFY_WEBHOOK_URL = _env("NOTIFY_WEBHOOK_URL", "")
        self.CERTIFICATE_OUTPUT_DIR = _env("CERTIFICATE_OUTPUT_DIR", "./certificates")

        self.SUPER_ADMIN_USER_ID = _env("SUPER_ADMIN_USER_ID", "")
        self.QUIZ_ENFORCE_TIME_LIMIT = _env_bool("QUIZ_ENFORCE_TIME_LIMIT", True)

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("Missing DATABASE_URL")
        if self.IS_PRODUCTION and self.AUTH_ALLOW_TEST_TOKENS:
            raise RuntimeError("AUTH_ALLOW_TEST_TOKENS must be disabled in production")
        if self.SESSION_TTL_MINUTES <= 0:
            raise RuntimeError("SESSION_TTL_MINUTES must be > 0")
        for name in ("RATE_LIMIT_GLOBAL", "RATE_LIMIT_DEFAULT", "RATE_LIMIT_LOGIN"):
            if not _RATE_RE.fullmatch(str(getattr(self, name) or "")):
                raise RuntimeError(f"Invalid {name} (expected '<count>/<seconds>')")
        if self.CELERY_ENABLED and not self.REDIS_URL:
            raise RuntimeError("CELERY_ENABLED requires REDIS_URL")
