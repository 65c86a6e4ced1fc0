from __future__ import annotations

import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from qwen_code_api.oauth.urls import normalize_resource_url

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8787
DEFAULT_TOKEN_REFRESH_BUFFER_MS = 30_000
DEFAULT_REQUEST_TIMEOUT_MS = 120_000
DEFAULT_CREDENTIALS_FILE = str(Path.home() / ".qwen" / "oauth_creds.json")


class Settings(BaseSettings):
    api_host: str = DEFAULT_HOST
    api_port: int = Field(default=DEFAULT_PORT, ge=1, le=65_535)
    api_key: str | None = None
    api_key_generated: bool = False
    oauth_credentials_path: str = DEFAULT_CREDENTIALS_FILE
    api_upstream_base_url: str | None = None
    token_refresh_buffer_ms: int = Field(default=DEFAULT_TOKEN_REFRESH_BUFFER_MS, ge=0)
    api_request_timeout_ms: int = Field(default=DEFAULT_REQUEST_TIMEOUT_MS, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="QWEN_CODE_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("api_host", "oauth_credentials_path", mode="before")
    @classmethod
    def _require_non_empty(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                raise ValueError("value is required")
        return value

    @field_validator("api_key", "api_upstream_base_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("api_upstream_base_url")
    @classmethod
    def _validate_upstream_base_url(cls, value: str | None) -> str | None:
        if value is not None:
            normalize_resource_url(value)
        return value

    @model_validator(mode="after")
    def _ensure_api_key(self) -> Settings:
        if not self.api_key:
            self.api_key = secrets.token_hex(24)
            self.api_key_generated = True
        return self

    @property
    def request_timeout_seconds(self) -> float:
        return self.api_request_timeout_ms / 1000.0

    @property
    def credentials_file(self) -> Path:
        return Path(self.oauth_credentials_path).expanduser()


@lru_cache
def get_settings() -> Settings:
    return Settings()
