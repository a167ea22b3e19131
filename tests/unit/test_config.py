"""Tests for configuration loading."""

from crmflow.config import load_config
from crmflow.transports import get_transport
from crmflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
engine:
  lease_ttl: 12
  retry:
    max_attempts: 5
  rule_health:
    failure_ratio_threshold: 0.25
"""
    )
    monkeypatch.setenv("CRMFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("CRMFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.engine.lease_ttl == 12
    assert config.engine.retry.max_attempts == 5
    assert config.engine.retry.max_backoff == 300.0
    assert config.engine.rule_health.failure_ratio_threshold == 0.25
    assert config.database_url is None


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("CRMFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("CRMFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.engine.step_timeout == 60.0
    assert config.engine.condition_timeout == 2.0
    assert config.engine.retry.max_attempts == 3
    assert config.engine.definition_cache_ttl == 30.0


def test_env_overrides_database_and_definitions(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://from-file.db\n")
    monkeypatch.setenv("CRMFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("CRMFLOW_DATABASE_URL", "sqlite://from-env.db")
    monkeypatch.setenv("CRMFLOW_DEFINITIONS", "flows.yaml")

    config = load_config()
    assert config.database_url == "sqlite://from-env.db"
    assert config.definitions_path == "flows.yaml"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("CRMFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("CRMFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
