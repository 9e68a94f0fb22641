from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "dealflow"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class ChannelConfig(BaseModel):
    """Per-channel switch, price and hard length ceiling."""

    enabled: bool = True
    cost_per_message: float = 0.0
    max_length: Optional[int] = None


class ChannelsConfig(BaseModel):
    email: ChannelConfig = ChannelConfig()
    sms: ChannelConfig = ChannelConfig(cost_per_message=0.05, max_length=160)
    whatsapp: ChannelConfig = ChannelConfig(cost_per_message=0.025, max_length=300)

    def for_channel(self, channel: str) -> ChannelConfig:
        return getattr(self, channel)


class RetryConfig(BaseModel):
    """Back-off for failed message sends. ``max_attempts`` counts the first try."""

    max_attempts: int = 3
    base_delay: float = 30.0
    factor: float = 2.0
    jitter: float = 0.1


class SchedulerConfig(BaseModel):
    max_concurrency: int = 10
    poll_interval: float = 1.0
    cancel_runs_on_deactivate: bool = True


class DealflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    channels: ChannelsConfig = ChannelsConfig()
    retry: RetryConfig = RetryConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    database_url: Optional[str] = None
    templates_path: Optional[str] = None


def load_config(path: Optional[str] = None) -> DealflowConfig:
    """Load configuration from YAML.

    The file is ``path``, then ``$DEALFLOW_CONFIG``, then ``config.yaml``; a
    missing file yields the defaults. ``DEALFLOW_DATABASE_URL`` (or
    ``DATABASE_URL``) and ``DEALFLOW_TEMPLATES`` override the file.

    Raises:
        ValidationError: If the file does not describe a valid configuration.
    """
    config_path = path or os.getenv("DEALFLOW_CONFIG", "config.yaml")
    data = {}
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    try:
        config = DealflowConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid config {config_path}: {e}") from e

    env_db_url = os.getenv("DEALFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_templates = os.getenv("DEALFLOW_TEMPLATES")
    if env_templates:
        config.templates_path = env_templates
    return config
