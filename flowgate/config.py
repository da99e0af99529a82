from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for the Redis run lock."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class LockConfig(BaseModel):
    """Run lock settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    timeout_seconds: float = 60.0
    blocking_timeout_seconds: float = 10.0


class EngineConfig(BaseModel):
    """Behavioural knobs for the workflow engine."""

    max_trigger_depth: int = 5
    callback_secret: Optional[str] = None
    callback_token_ttl_seconds: int = 7 * 24 * 3600
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 3


class IntegrationConfig(BaseModel):
    """HTTP endpoint that starts calls for an ``integration_call`` step."""

    url: str
    headers: Dict[str, str] = {}
    timeout_seconds: float = 10.0


class FlowgateConfig(BaseModel):
    """Top-level configuration model."""

    locks: LockConfig = LockConfig()
    engine: EngineConfig = EngineConfig()
    integrations: Dict[str, IntegrationConfig] = {}
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> FlowgateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWGATE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWGATE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowgateConfig(**data)
    else:
        config = FlowgateConfig()

    env_db_url = os.getenv("FLOWGATE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_secret = os.getenv("FLOWGATE_CALLBACK_SECRET")
    if env_secret:
        config.engine.callback_secret = env_secret
    env_lock = os.getenv("FLOWGATE_LOCK_BACKEND")
    if env_lock:
        config.locks.backend = env_lock.lower()  # type: ignore[assignment]
    return config
