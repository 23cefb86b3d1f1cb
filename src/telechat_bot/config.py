"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from telechat_bot.errors import ConfigError

GROQ_CHAT_URL = "https://api.groq.com/openai/v1/chat/completions"
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class TelegramConfig(BaseModel):
    token: str
    bot_username: str = ""
    poll_timeout: int = 60
    request_timeout: float = 30.0
    poll_error_delay: float = 0.0

    @field_validator("token")
    @classmethod
    def _require_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("TELEGRAM_BOT_TOKEN is required")
        return value

    @field_validator("bot_username")
    @classmethod
    def _strip_at(cls, value: str) -> str:
        return value.strip().lstrip("@")


class CompletionConfig(BaseModel):
    api_keys: list[str]
    model: str = "qwen/qwen3-32b"
    endpoint: str = GROQ_CHAT_URL
    timeout: float = 120.0

    @field_validator("api_keys", mode="before")
    @classmethod
    def _split_keys(cls, value: Any) -> list[str]:
        # "key1, key2,key3" -> ["key1", "key2", "key3"]
        if isinstance(value, str):
            value = value.split(",")
        keys = [str(k).strip() for k in value or [] if str(k).strip()]
        if not keys:
            raise ValueError("GROQ_API_KEY is required (one or more comma-separated keys)")
        return keys


class ChatConfig(BaseModel):
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    cite_sources: bool = False
    history_limit: int = Field(default=20, ge=1)
    typing_interval: float = Field(default=4.0, gt=0)
    auto_title: bool = True
    auto_title_chat_types: list[str] = Field(default_factory=lambda: ["private"])

    @field_validator("system_prompt")
    @classmethod
    def _default_prompt(cls, value: str) -> str:
        return value.strip() or DEFAULT_SYSTEM_PROMPT


class StorageConfig(BaseModel):
    db_path: str = "telechatbot.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"  # "console" | "json"
    telegram: TelegramConfig
    completion: CompletionConfig
    chat: ChatConfig = Field(default_factory=ChatConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


# Environment variable -> (section, field). Section None means top level.
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "TELEGRAM_BOT_TOKEN": ("telegram", "token"),
    "BOT_USERNAME": ("telegram", "bot_username"),
    "GROQ_API_KEY": ("completion", "api_keys"),
    "GROQ_MODEL": ("completion", "model"),
    "GROQ_API_URL": ("completion", "endpoint"),
    "SYSTEM_PROMPT": ("chat", "system_prompt"),
    "DATABASE_FILE": ("storage", "db_path"),
    "LOG_LEVEL": (None, "log_level"),
}

_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        value = os.environ.get(match.group(1))
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for var_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(var_name)
        if value is None or value == "":
            continue
        if section is None:
            data[key] = value
        else:
            target = data.get(section)
            if not isinstance(target, dict):
                target = {}
                data[section] = target
            target[key] = value
    # Required sections must exist so validation reports the missing field by name
    data.setdefault("telegram", {}).setdefault("token", "")
    data.setdefault("completion", {}).setdefault("api_keys", "")
    return data


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load configuration from .env, an optional YAML file, and the environment.

    Environment variables take precedence over the YAML file. Raises
    ConfigError when a required credential is absent or a value is invalid.
    """
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    data: dict[str, Any] = {}
    config_file = Path(config_path)
    if config_file.exists():
        raw_text = config_file.read_text(encoding="utf-8")
        loaded = yaml.safe_load(_interpolate_env_vars(raw_text))
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"{config_file}: top level must be a mapping")
        data = loaded or {}

    data = _apply_env_overrides(data)

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
