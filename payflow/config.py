from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CANCEL_ROLES,
    DEFAULT_CONFLICT_RETRIES,
    DEFAULT_EVENT_TOPIC,
    DEFAULT_PERSISTENCE_TIMEOUT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "payflow"


class TransportConfig(BaseModel):
    """Event transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = DEFAULT_EVENT_TOPIC
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Tuning for the service facade around the transition engine."""

    persistence_timeout: float = DEFAULT_PERSISTENCE_TIMEOUT
    conflict_retries: int = Field(default=DEFAULT_CONFLICT_RETRIES, ge=0)
    retry_backoff_base: float = 0.05


class PolicyConfig(BaseModel):
    """Roles allowed to cancel a running workflow."""

    cancel_roles: List[str] = Field(default_factory=lambda: list(DEFAULT_CANCEL_ROLES))


class PayflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    policy: PolicyConfig = PolicyConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


CONFIG_ENV = "PAYFLOW_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"


def _read_yaml(path: Path) -> Dict[str, Any]:
    with path.open() as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[str] = None) -> PayflowConfig:
    """Load configuration from a YAML file, then apply environment overrides.

    Args:
        path: Optional path to the config file. Falls back to the
            PAYFLOW_CONFIG env variable or 'config.yaml' in the current
            directory. A missing file means defaults.

    Environment variables win over the file: ``PAYFLOW_DATABASE_URL`` (or
    ``DATABASE_URL``) and ``PAYFLOW_LOG_LEVEL``.
    """
    config_path = Path(path or os.getenv(CONFIG_ENV, DEFAULT_CONFIG_PATH))
    data = _read_yaml(config_path) if config_path.is_file() else {}
    config = PayflowConfig.model_validate(data)

    overrides: Dict[str, Any] = {}
    database_url = os.getenv("PAYFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if database_url:
        overrides["database_url"] = database_url
    if os.getenv("PAYFLOW_LOG_LEVEL"):
        overrides["log_level"] = os.environ["PAYFLOW_LOG_LEVEL"]
    return config.model_copy(update=overrides) if overrides else config
