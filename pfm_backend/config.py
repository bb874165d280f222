from __future__ import annotations

from dataclasses import dataclass
import os


def _parse_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    jwt_secret: str
    jwt_algorithm: str
    access_token_ttl_minutes: int
    projection_lookahead_days: int
    projection_days: int
    log_level: str


def load_settings() -> Settings:
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./pfm.db"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_ttl_minutes=_parse_int(os.getenv("ACCESS_TOKEN_TTL_MINUTES"), 1440),
        projection_lookahead_days=_parse_int(os.getenv("PROJECTION_LOOKAHEAD_DAYS"), 30),
        projection_days=_parse_int(os.getenv("PROJECTION_DAYS"), 90),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


settings = load_settings()
