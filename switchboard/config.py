"""Configuration management with Pydantic Settings + optional YAML."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _xdg_dir(env_var: str, fallback: Path) -> Path:
    return Path(os.environ.get(env_var, fallback)) / "switchboard"


def get_config_dir() -> Path:
    env = os.environ.get("SWITCHBOARD_CONFIG_DIR")
    if env:
        return Path(env)
    return _xdg_dir("XDG_CONFIG_HOME", Path.home() / ".config")


def get_data_dir() -> Path:
    env = os.environ.get("SWITCHBOARD_DATA_DIR")
    if env:
        return Path(env)
    return _xdg_dir("XDG_DATA_HOME", Path.home() / ".local" / "share")


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_ms: int = Field(default=1000, ge=0)


class ResolverConfig(BaseModel):
    base_url: str = ""
    # capability -> owning feature in the registry
    features: dict[str, str] = Field(default_factory=lambda: {
        "chat": "knowledge-base",
        "file_processing": "knowledge-base",
        "vector_search": "knowledge-base",
    })
    # capability -> ordered name synonyms for legacy, untagged webhooks
    keywords: dict[str, list[str]] = Field(default_factory=lambda: {
        "chat": ["chat", "ai", "assistant"],
        "file_processing": ["file", "extract", "document"],
        "vector_search": ["vector", "search", "embedding"],
    })


class ProxyConfig(BaseModel):
    mode: str = "edge"  # "edge" or "direct"
    endpoint: str = ""
    token: str = ""
    api_key: str = ""
    api_key_header: str = "X-N8N-API-KEY"
    timeout: float = 30.0


class ChatConfig(BaseModel):
    max_context_messages: int = 10
    model: str = "gpt-4"
    temperature: float = 0.7
    max_tokens: int | None = 2000
    stuck_after_seconds: int = 300


class ServerConfig(BaseModel):
    bind: str = "127.0.0.1"
    port: int = 8420
    token: str = ""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SWITCHBOARD_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    retry: RetryConfig = Field(default_factory=RetryConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    data_dir: str = ""
    log_level: str = "INFO"
    log_json: bool = False

    def get_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir)
        return get_data_dir()


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings from env vars, optionally overlaying a YAML config."""
    yaml_data: dict[str, Any] = {}

    if config_path is None:
        config_path = os.environ.get("SWITCHBOARD_CONFIG")
    if config_path is None:
        default = get_config_dir() / "config.yaml"
        if default.exists():
            config_path = default

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

    # YAML values act as init kwargs; env vars still apply to unset fields
    return Settings(**yaml_data)
