"""Configuration loader: reads config.yaml, validates with Pydantic.

Credentials are usually left out of the YAML and picked up from
OPENAI_API_KEY / OPENAI_BASE_URL (a local .env file is honoured).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Annotated

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_CONFIG_PATH = "config.yaml"


class UpstreamConfig(BaseModel):
    """The OpenAI-compatible completion API the relay streams from."""

    model: str = "gpt-3.5-turbo"
    base_url: str | None = None
    api_key: str | None = None
    timeout: Annotated[float, Field(gt=0)] | None = None  # None = SDK default


class PromptCacheConfig(BaseModel):
    """Lifetime of keyed prompts and how often expired ones are swept."""

    ttl_seconds: float = Field(default=60.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)


class StreamConfig(BaseModel):
    queue_size: int = Field(default=64, ge=1)   # frames buffered per connection
    diagnostic_errors: bool = False             # send `event: error` before closing
    announce_connection: bool = False           # send `event: connected` first


class RelayConfig(BaseModel):
    """Top-level relay configuration."""

    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    prompt_cache: PromptCacheConfig = Field(default_factory=PromptCacheConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)

    allowed_origins: list[str] = ["*"]
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Module-level config cache
# ---------------------------------------------------------------------------

_config: RelayConfig | None = None
_config_path: str | None = None


def _apply_env(config: RelayConfig) -> RelayConfig:
    """Fill unset upstream credentials from the environment."""
    if config.upstream.api_key is None:
        config.upstream.api_key = os.environ.get("OPENAI_API_KEY")
    if config.upstream.base_url is None:
        config.upstream.base_url = os.environ.get("OPENAI_BASE_URL")
    return config


def load_config(path: str | None = None) -> RelayConfig:
    """Read the config file from disk, validate, and cache.

    ``path`` defaults to $RELAY_CONFIG, then config.yaml. A path given
    explicitly must exist; a missing default file means "use defaults".
    """
    global _config, _config_path
    explicit = path or os.environ.get("RELAY_CONFIG")
    _config_path = explicit

    config_file = Path(explicit or DEFAULT_CONFIG_PATH)
    if config_file.exists():
        raw = yaml.safe_load(config_file.read_text()) or {}
        config = RelayConfig(**raw)
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {config_file.resolve()}")
    else:
        logger.warning(f"{config_file.resolve()} not found, using default config")
        config = RelayConfig()

    _config = _apply_env(config)
    logger.info(
        f"Loaded config: model={_config.upstream.model}, "
        f"base_url={_config.upstream.base_url or 'default'}, "
        f"api_key={'set' if _config.upstream.api_key else 'missing'}"
    )
    return _config


def get_config() -> RelayConfig:
    """Return cached config. Raises if not yet loaded."""
    if _config is None:
        raise RuntimeError("Config not loaded, call load_config() first")
    return _config


def reload_config() -> RelayConfig:
    """Re-read config from disk. Called by /reload endpoint."""
    logger.info(f"Reloading config from {_config_path or DEFAULT_CONFIG_PATH}")
    return load_config(_config_path)
