from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_int(name: str, default: int) -> int:
    return int(_get_env(name, str(default)))


def _get_float(name: str, default: float) -> float:
    return float(_get_env(name, str(default)))


def _get_csv(name: str, default: str = "") -> list[str]:
    raw = _get_env(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    anthropic_api_key: str
    anthropic_base_url: str
    anthropic_version: str
    model: str
    max_output_tokens: int
    connect_timeout_s: float
    upstream_timeout_s: float
    rate_limit_max_requests: int
    rate_limit_window_s: float
    rate_limit_sweep_interval_s: float
    max_body_bytes: int
    cors_allowed_origins: list[str]
    host: str
    port: int
    log_level: str


load_dotenv()

settings = Settings(
    anthropic_api_key=_get_env("ANTHROPIC_API_KEY", ""),
    anthropic_base_url=_get_env("ANTHROPIC_BASE_URL", "https://api.anthropic.com").rstrip("/"),
    anthropic_version=_get_env("ANTHROPIC_VERSION", "2023-06-01"),
    model=_get_env("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
    max_output_tokens=_get_int("MAX_OUTPUT_TOKENS", 1000),
    connect_timeout_s=_get_float("CONNECT_TIMEOUT_S", 5.0),
    upstream_timeout_s=_get_float("UPSTREAM_TIMEOUT_S", 60.0),
    rate_limit_max_requests=_get_int("RATE_LIMIT_MAX_REQUESTS", 10),
    rate_limit_window_s=_get_float("RATE_LIMIT_WINDOW_S", 60.0),
    rate_limit_sweep_interval_s=_get_float("RATE_LIMIT_SWEEP_INTERVAL_S", 300.0),
    max_body_bytes=_get_int("MAX_BODY_BYTES", 10 * 1024 * 1024),
    cors_allowed_origins=_get_csv("CORS_ALLOWED_ORIGINS", "*"),
    host=_get_env("HOST", "0.0.0.0"),
    port=_get_int("PORT", 3000),
    log_level=_get_env("LOG_LEVEL", "info"),
)
