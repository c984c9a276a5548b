"""Configuration management for Grove MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "grove"
    return Path.home() / ".config" / "grove"


class GroveSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    config_dir: Path = Field(default_factory=_default_config_dir, validation_alias="GROVE_CONFIG_DIR")
    base_port: int = Field(default=7681, validation_alias="GROVE_BASE_PORT")
    terminal_host: str = Field(default="localhost", validation_alias="TERMINAL_HOST")
    cert_file: Path | None = Field(default=None, validation_alias="GROVE_CERT_FILE")
    key_file: Path | None = Field(default=None, validation_alias="GROVE_KEY_FILE")
    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    poll_interval: float = Field(default=2.0, validation_alias="GROVE_POLL_INTERVAL")
    reconcile_interval: float = Field(default=30.0, validation_alias="GROVE_RECONCILE_INTERVAL")
    webhook_timeout: float = Field(default=10.0, validation_alias="GROVE_WEBHOOK_TIMEOUT")
    setup_output_limit: int = Field(default=65536, validation_alias="GROVE_SETUP_OUTPUT_LIMIT")
    state_patterns_path: Path | None = Field(default=None, validation_alias="GROVE_STATE_PATTERNS")
    log_level: str = Field(default="INFO", validation_alias="GROVE_LOG_LEVEL")
    log_file: Path | None = Field(default=None, validation_alias="GROVE_LOG_FILE")
    transport: str = Field(default="stdio", validation_alias="GROVE_TRANSPORT")
    http_host: str = Field(default="127.0.0.1", validation_alias="GROVE_HTTP_HOST")
    http_port: int = Field(default=3000, validation_alias="GROVE_HTTP_PORT")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "GROVE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("transport")
    @classmethod
    def _normalize_transport(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"stdio", "http", "sse"}:
            raise ValueError("GROVE_TRANSPORT must be one of stdio, http, sse")
        return normalized

    @field_validator("base_port", "http_port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError("Ports must be within 1..65535")
        return value

    @field_validator("setup_output_limit")
    @classmethod
    def _validate_output_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("GROVE_SETUP_OUTPUT_LIMIT must be >= 1")
        return value

    @field_validator("poll_interval", "reconcile_interval", "webhook_timeout")
    @classmethod
    def _validate_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Intervals and timeouts must be > 0")
        return value

    @property
    def sessions_file(self) -> Path:
        return self.config_dir / "sessions.json"

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def resolved_log_file(self) -> Path:
        return self.log_file or self.config_dir / "server.log"

    @property
    def resolved_cert_file(self) -> Path:
        return self.cert_file or self.config_dir / "certs" / f"{self.terminal_host}.crt"

    @property
    def resolved_key_file(self) -> Path:
        return self.key_file or self.config_dir / "certs" / f"{self.terminal_host}.key"

    def terminal_url(self, port: int) -> str:
        return f"https://{self.terminal_host}:{port}"


@lru_cache(maxsize=1)
def get_settings() -> GroveSettings:
    """Return cached settings instance."""

    settings = GroveSettings()
    settings.config_dir = settings.config_dir.expanduser().resolve()
    if settings.state_patterns_path is not None:
        settings.state_patterns_path = settings.state_patterns_path.expanduser().resolve()
    return settings


__all__ = ["GroveSettings", "get_settings"]
