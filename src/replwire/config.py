"""Configuration management for replwire."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Connection and runtime settings."""

    model_config = SettingsConfigDict(
        env_prefix="REPLWIRE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Network
    host: str = Field(default="127.0.0.1", description="Host to bind or connect to")
    port: int = Field(default=7888, ge=0, le=65535, description="Port to bind or connect to")

    # Framing
    read_chunk_size: int = Field(default=64 * 1024, ge=1, description="Bytes requested per transport read")
    max_frame_bytes: int = Field(default=64 * 1024 * 1024, ge=1, description="Largest undecoded frame accepted")

    # Requests
    request_timeout_seconds: float | None = Field(
        default=None, gt=0, description="Per-request timeout applied by the client; None waits indefinitely"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: Literal["default", "console"] = Field(default="default", description="Log output profile")


def get_settings(**overrides: Any) -> Settings:
    """Load settings from the environment, applying explicit overrides."""

    return Settings(**{key: value for key, value in overrides.items() if value is not None})
