from __future__ import annotations

import os
from typing import Optional, Literal

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Step retry policy defaults."""

    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_jitter: float = 0.5
    max_backoff: float = 300.0


class RuleHealthConfig(BaseModel):
    """Thresholds used to flag rules that keep failing."""

    failure_ratio_threshold: float = 0.5
    failure_ratio_window: int = 20
    failure_ratio_min_samples: int = 5


class EngineConfig(BaseModel):
    """Execution engine tuning knobs."""

    worker_id: Optional[str] = None
    retry: RetryConfig = RetryConfig()
    rule_health: RuleHealthConfig = RuleHealthConfig()
    step_timeout: float = 60.0
    condition_timeout: float = 2.0
    condition_workers: int = 4
    lease_ttl: float = 30.0
    definition_cache_ttl: float = 30.0


class CrmflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    database_url: Optional[str] = None
    definitions_path: Optional[str] = None


def load_config(path: Optional[str] = None) -> CrmflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CRMFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CRMFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CrmflowConfig(**data)
    else:
        config = CrmflowConfig()

    env_db_url = os.getenv("CRMFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_definitions = os.getenv("CRMFLOW_DEFINITIONS")
    if env_definitions:
        config.definitions_path = env_definitions
    return config
