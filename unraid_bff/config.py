"""
Configuration and settings for the BFF.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_prefix="UNRAID_BFF_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_prefix: str = Field(default="/api")

    # Encrypted credential store + audit log live here
    data_dir: str = Field(default="data")

    # Secret used to derive the store key. Weak values fall back to a
    # generated key file inside data_dir.
    encryption_key: Optional[str] = Field(default=None)

    # Upstream Unraid GraphQL
    allow_self_signed: bool = Field(default=True)
    request_timeout: float = Field(default=15.0)

    # Write protection
    write_rate_limit: int = Field(default=20)
    write_rate_window_seconds: float = Field(default=60.0)
    csrf_cookie_name: str = Field(default="unpwa_csrf")
    csrf_header_name: str = Field(default="x-csrf-token")

    # Behind a reverse proxy, take the client address from X-Forwarded-For
    trust_proxy: bool = Field(default=False)
    trusted_proxy_hosts: str = Field(default="*")

    # Comma separated; "*" allows any origin
    allowed_origins: str = Field(default="*")

    log_level: str = Field(default="INFO")

    def origin_list(self) -> list[str]:
        return [item.strip() for item in self.allowed_origins.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
