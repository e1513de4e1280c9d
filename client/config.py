"""Device-side configuration loaded from environment variables."""

from __future__ import annotations

from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


class ClientSettings(BaseSettings):
    """Sync client settings, read from ``VERBCARDS_*`` variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="VERBCARDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server_url: str = "http://localhost:8000"
    database_url: str = "sqlite+aiosqlite:///data/local/cards.db"
    device_id: str | None = None
    allow_insecure_http: bool = False

    sync_interval_seconds: float = Field(default=30.0, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    backoff_max_seconds: float = Field(default=600.0, gt=0)


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized
