"""Tests for configuration loading."""

from acidjob.config import load_config
from acidjob.transports import get_transport
from acidjob.transports.redis import RedisTransport


def test_load_config_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("ACIDJOB_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("ACIDJOB_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("ACIDJOB_TRANSPORT", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.database_url is None
    assert config.locking.strict is False
    assert config.transport.retry.max_attempts == 3


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
  retry:
    max_attempts: 5
locking:
  strict: true
  timeout_seconds: 30
outbox:
  batch_size: 10
"""
    )
    monkeypatch.setenv("ACIDJOB_CONFIG", str(config_path))
    monkeypatch.delenv("ACIDJOB_TRANSPORT", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.transport.retry.max_attempts == 5
    assert config.locking.strict is True
    assert config.locking.timeout_seconds == 30
    assert config.outbox.batch_size == 10


def test_env_overrides_database_url_and_transport(tmp_path, monkeypatch):
    monkeypatch.setenv("ACIDJOB_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("ACIDJOB_DATABASE_URL", "sqlite:///tmp/acid.db")
    monkeypatch.setenv("ACIDJOB_TRANSPORT", "kafka")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/acid.db"
    assert config.transport.backend == "kafka"


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
    monkeypatch.setenv("ACIDJOB_CONFIG", str(config_path))
    monkeypatch.delenv("ACIDJOB_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
