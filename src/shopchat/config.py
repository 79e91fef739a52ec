"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from shopchat.errors import ConfigurationError


class LLMConfig(BaseModel):
    backend: str = "openai"  # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 400


class OpenAIConfig(BaseModel):
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    max_retries: int = 3
    timeout: float = 30.0


class AnthropicConfig(BaseModel):
    api_key: str
    base_url: Optional[str] = None
    max_retries: int = 3
    timeout: float = 30.0


class EmbeddingConfig(BaseModel):
    project_id: str = ""
    location: str = "us-central1"
    fallback_locations: list[str] = Field(
        default_factory=lambda: ["us-central1", "europe-west4"]
    )
    model: str = "multimodalembedding@001"
    dimension: int = 1408
    client_email: str = ""
    private_key: str = ""
    credentials_file: Optional[str] = None
    timeout: float = 30.0
    max_retries: int = 3


class RagConfig(BaseModel):
    enhance_queries: bool = True
    enhancer_model: Optional[str] = None  # defaults to llm.model
    enhancer_max_tokens: int = 200
    enhancer_temperature: float = 0.2
    top_k: int = 5
    max_context_chars: int = 4000
    match_count: int = 20
    vector_threshold: float = 0.3
    hybrid_alpha: float = 0.5
    history_turns: int = 6


class CacheConfig(BaseModel):
    enhancement_size: int = 500
    enhancement_ttl_seconds: int = 3600
    embedding_size: int = 300
    embedding_ttl_seconds: int = 7200


class FacebookConfig(BaseModel):
    graph_version: str = "v20.0"
    app_secret: str = ""
    verify_token: str = ""
    timeout: float = 15.0
    max_retries: int = 2


class TelegramConfig(BaseModel):
    timeout: float = 15.0


class RateLimitConfig(BaseModel):
    requests: int = 30
    interval_seconds: float = 60.0


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    public_url: str = ""
    admin_token: str = ""


class StorageConfig(BaseModel):
    db_path: str = "./data/shopchat.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    json_logs: bool = False
    data_dir: str = "./data"
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    anthropic: Optional[AnthropicConfig] = None
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    rag: RagConfig = Field(default_factory=RagConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    facebook: FacebookConfig = Field(default_factory=FacebookConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigurationError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    try:
        # First pass: extract data_dir for self-referencing
        raw_data = yaml.safe_load(raw_text) or {}
        if not isinstance(raw_data, dict):
            raise ConfigurationError(f"{config_file} must contain a mapping at the top level")
        data_dir = str(raw_data.get("data_dir", "./data"))
        data_dir = _interpolate_env_vars(data_dir)

        # Second pass: interpolate all env vars
        interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
        data = yaml.safe_load(interpolated) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_file}: {e}") from e

    try:
        config = AppConfig(**data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_file}: {e}") from e
    _strip_unresolved(config)
    return config


def _strip_unresolved(config: AppConfig) -> None:
    """Blank out secrets whose ${VAR} placeholder had no value in the environment."""
    for section, attrs in (
        (config.openai, ("api_key",)),
        (config.embedding, ("project_id", "client_email", "private_key")),
        (config.facebook, ("app_secret", "verify_token")),
        (config.server, ("admin_token", "public_url")),
    ):
        for attr in attrs:
            value = getattr(section, attr)
            if isinstance(value, str) and _ENV_VAR_PATTERN.fullmatch(value.strip()):
                setattr(section, attr, "")
