"""Application settings using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "Morphlex Hands"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # ==========================================================================
    # Script generator (OpenAI-compatible chat completions endpoint)
    # ==========================================================================
    llm_api_key: str = Field(default="")
    llm_base_url: str = "https://api.deepseek.com"
    llm_model: str = "deepseek-chat"
    llm_timeout_seconds: float = 120.0
    llm_temperature: float = 0.2

    # ==========================================================================
    # Plan execution
    # ==========================================================================
    workspace_root: str | None = None
    work_dir_name: str = ".morph"
    transform_command: list[str] = Field(default=["npx", "jscodeshift"])

    # ==========================================================================
    # API
    # ==========================================================================
    api_host: str = "127.0.0.1"
    api_port: int = 3030
    cors_origins: list[str] = Field(default=["http://localhost:3000"])


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
