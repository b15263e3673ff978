"""Configuration management using Pydantic Settings."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from querybuddy.llm.models import ProviderType
from querybuddy.tools.definitions import DatabaseType


class LLMConfig(BaseModel):
    model: str = "gpt-5"
    max_tokens: int = 4096
    request_timeout: float = 120.0
    stream_queue_size: int = 100
    max_iterations: int = 25


class DatabaseConfig(BaseModel):
    type: DatabaseType = DatabaseType.SQLITE
    path: str = "data/querybuddy.db"
    connection_id: str = "default"


class CopilotConfig(BaseModel):
    cli_path: str = "copilot"
    cli_args: list[str] = []


# Vendor env vars consulted when no QUERYBUDDY_* key is configured.
_VENDOR_KEY_ENV = {
    ProviderType.OPENAI: "OPENAI_API_KEY",
    ProviderType.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderType.GOOGLE: "GOOGLE_API_KEY",
    ProviderType.OPENROUTER: "OPENROUTER_API_KEY",
    ProviderType.VERCEL: "AI_GATEWAY_API_KEY",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUERYBUDDY_",
        env_nested_delimiter="__",
    )

    llm: LLMConfig = LLMConfig()
    database: DatabaseConfig = DatabaseConfig()
    copilot: CopilotConfig = CopilotConfig()
    log_level: str = "INFO"

    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_api_key: str = ""
    openrouter_api_key: str = ""
    vercel_api_key: str = ""

    @classmethod
    def load(cls, config_path: Path | None = None) -> Settings:
        """Load settings from YAML file, then overlay env vars."""
        data: dict = {}
        if config_path and config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        return cls(**data)

    def api_key_for(self, provider_type: ProviderType | str) -> str:
        """API key for a provider; empty for Copilot, which uses its own login."""
        provider_type = ProviderType(provider_type)
        if provider_type == ProviderType.COPILOT:
            return ""
        key = getattr(self, f"{provider_type.value}_api_key", "")
        if key:
            return key
        return os.environ.get(_VENDOR_KEY_ENV[provider_type], "")


def get_project_root() -> Path:
    """Walk up from CWD to find pyproject.toml, or fall back to CWD."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return current


def load_settings() -> Settings:
    """Load settings from the project root's config/settings.yaml."""
    root = get_project_root()
    return Settings.load(root / "config" / "settings.yaml")
