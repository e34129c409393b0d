from __future__ import annotations

import ipaddress
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DEFAULT_HOME_DIR = Path.home() / ".vibeproxy"
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "usage.db"

_LOOPBACK_NAMES = {"localhost"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VIBEPROXY_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = f"sqlite+aiosqlite:///{DEFAULT_DB_PATH}"
    log_level: str = "INFO"

    proxy_host: str = "127.0.0.1"
    proxy_port: int = Field(default=8317, gt=0, lt=65536)
    backend_base_url: str = "http://127.0.0.1:8318"
    management_origin: str = "https://ampcode.com"
    login_origin: str = "https://ampcode.com"

    gateway_enabled: bool = False
    gateway_api_key: str | None = None
    gateway_base_url: str = "https://ai-gateway.vercel.sh"
    gateway_messages_path: str = "/v1/messages"
    anthropic_version: str = "2023-06-01"
    interleaved_thinking_beta: str = "interleaved-thinking-2025-05-14"

    thinking_hard_token_cap: int = Field(default=32000, gt=1)
    thinking_minimum_headroom: int = Field(default=1024, ge=1)
    thinking_headroom_ratio: float = Field(default=0.1, ge=0.0)

    upstream_connect_timeout_seconds: float = Field(default=5.0, gt=0)
    upstream_read_timeout_seconds: float = Field(default=90.0, gt=0)
    upstream_pool_size_per_host: int = Field(default=16, gt=0)
    max_sse_event_bytes: int = Field(default=2 * 1024 * 1024, gt=0)
    max_usage_capture_bytes: int = Field(default=4 * 1024 * 1024, gt=0)
    account_key_header: str = "x-cliproxy-account"

    usage_tracking_enabled: bool = True
    usage_queue_max_size: int = Field(default=1000, gt=0)
    usage_write_batch_size: int = Field(default=100, gt=0)
    usage_record_timeout_seconds: float = Field(default=2.0, gt=0)
    usage_query_max_rows: int = Field(default=500_000, gt=0)

    native_usage_enabled: bool = True
    native_usage_path: str = "/v0/management/usage"
    management_key: str | None = None
    native_usage_timeout_seconds: float = Field(default=5.0, gt=0)
    native_usage_max_retries: int = Field(default=1, ge=0)

    @field_validator("database_url")
    @classmethod
    def _expand_database_url(cls, value: str) -> str:
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if value.startswith(prefix):
                path = value[len(prefix) :]
                if path.startswith("~"):
                    return f"{prefix}{Path(path).expanduser()}"
        return value

    @field_validator("proxy_host")
    @classmethod
    def _require_loopback_host(cls, value: str) -> str:
        host = value.strip()
        if host.lower() in _LOOPBACK_NAMES:
            return host
        try:
            address = ipaddress.ip_address(host)
        except ValueError as exc:
            raise ValueError(f"proxy_host must be a loopback address, got {value!r}") from exc
        if not address.is_loopback:
            raise ValueError(f"proxy_host must be a loopback address, got {value!r}")
        return host

    @field_validator("backend_base_url", "management_origin", "login_origin", "gateway_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("gateway_api_key", "management_key", mode="before")
    @classmethod
    def _blank_secret_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
