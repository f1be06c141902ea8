"""Tests for configuration loading."""

import pytest

import payflow.persistence as persistence
from payflow.config import load_config
from payflow.persistence import SQLiteWorkflowRepository, get_repository
from payflow.transports import InMemoryTransport, get_transport
from payflow.transports.redis import RedisTransport


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("PAYFLOW_DATABASE_URL", "DATABASE_URL", "PAYFLOW_LOG_LEVEL", "PAYFLOW_TRANSPORT"):
        monkeypatch.delenv(name, raising=False)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  topic: approvals
  redis:
    host: testhost
    port: 1234
engine:
  persistence_timeout: 2.5
  conflict_retries: 3
policy:
  cancel_roles: [SUPER_ADMIN]
"""
    )
    monkeypatch.setenv("PAYFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.topic == "approvals"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.engine.persistence_timeout == 2.5
    assert config.engine.conflict_retries == 3
    assert config.policy.cancel_roles == ["SUPER_ADMIN"]


def test_defaults_without_file(tmp_path):
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.transport.backend == "inmemory"
    assert config.engine.conflict_retries == 1
    assert config.policy.cancel_roles == ["ORG_ADMIN", "SUPER_ADMIN"]
    assert config.database_url is None


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\nlog_level: INFO\n")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///from-env.db")
    monkeypatch.setenv("PAYFLOW_LOG_LEVEL", "DEBUG")

    config = load_config(str(config_path))
    assert config.database_url == "sqlite:///from-env.db"
    assert config.log_level == "DEBUG"


def test_negative_retry_count_is_rejected(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("engine:\n  conflict_retries: -1\n")
    with pytest.raises(ValueError):
        load_config(str(config_path))


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
    monkeypatch.setenv("PAYFLOW_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380

    assert isinstance(get_transport("inmemory"), InMemoryTransport)
    with pytest.raises(ValueError):
        get_transport("carrier-pigeon")


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    repo = get_repository(f"sqlite://{tmp_path / 'flows.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    with pytest.raises(ValueError):
        get_repository("mongodb://localhost")
