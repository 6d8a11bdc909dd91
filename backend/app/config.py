import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .services.upstream import DEFAULT_TIMEOUT_SECONDS, YOUTUBE_API_BASE_URL


class Settings(BaseModel):
    youtube_api_key: str
    port: int = Field(default=3000, ge=1, le=65535)
    cache_ttl_seconds: int = Field(default=2 * 60 * 60, ge=1)
    cache_check_period_seconds: int = Field(default=120, ge=1)
    cache_stale_retention_seconds: int = Field(default=24 * 60 * 60, ge=0)
    quota_check_interval_seconds: int = Field(default=5 * 60, ge=1)
    upstream_timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    youtube_api_base_url: str = YOUTUBE_API_BASE_URL
    cors_allowed_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


ENV_FIELDS = {
    "PORT": "port",
    "CACHE_TTL_SECONDS": "cache_ttl_seconds",
    "CACHE_CHECK_PERIOD_SECONDS": "cache_check_period_seconds",
    "CACHE_STALE_RETENTION_SECONDS": "cache_stale_retention_seconds",
    "QUOTA_CHECK_INTERVAL_SECONDS": "quota_check_interval_seconds",
    "UPSTREAM_TIMEOUT_SECONDS": "upstream_timeout_seconds",
    "YOUTUBE_API_BASE_URL": "youtube_api_base_url",
    "LOG_LEVEL": "log_level",
}


def parse_cors_origins(raw: str | None) -> list[str]:
    raw = (raw or "").strip()
    if not raw or raw == "*":
        return ["*"]
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["*"]


def load_settings() -> Settings:
    """
    Read settings from the environment (and backend/.env when present).
    A missing YOUTUBE_API_KEY is fatal; malformed numbers raise pydantic's
    ValidationError.
    """
    load_dotenv()

    api_key = (os.getenv("YOUTUBE_API_KEY") or "").strip()
    if not api_key:
        raise RuntimeError("Missing YOUTUBE_API_KEY in backend/.env")

    values: dict = {"youtube_api_key": api_key}
    for env_name, field_name in ENV_FIELDS.items():
        raw = (os.getenv(env_name) or "").strip()
        if raw:
            values[field_name] = raw
    values["cors_allowed_origins"] = parse_cors_origins(os.getenv("CORS_ALLOWED_ORIGINS"))
    return Settings(**values)
