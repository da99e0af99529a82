"""Tests for configuration loading."""

import pytest

from flowgate.config import load_config
from flowgate.locks import InMemoryRunLock, get_run_lock
from flowgate.locks.redis import RedisRunLock
from flowgate.persistence import (
    InMemoryWorkflowRepository,
    SQLWorkflowRepository,
    get_repository,
    reset_repository,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for name in (
        "FLOWGATE_CONFIG",
        "FLOWGATE_DATABASE_URL",
        "DATABASE_URL",
        "FLOWGATE_CALLBACK_SECRET",
        "FLOWGATE_LOCK_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_repository()
    yield
    reset_repository()


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "flowgate.yaml"
    config_path.write_text(
        """
database_url: sqlite:///from-file.db
locks:
  backend: redis
  redis:
    host: testhost
    port: 1234
engine:
  max_trigger_depth: 3
  callback_secret: file-secret
"""
    )
    monkeypatch.setenv("FLOWGATE_CONFIG", str(config_path))

    config = load_config()
    assert config.locks.backend == "redis"
    assert config.locks.redis.host == "testhost"
    assert config.locks.redis.port == 1234
    assert config.engine.max_trigger_depth == 3
    assert config.engine.callback_secret == "file-secret"
    assert config.database_url == "sqlite:///from-file.db"


def test_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("engine:\n  callback_secret: file-secret\n")
    monkeypatch.setenv("FLOWGATE_CALLBACK_SECRET", "env-secret")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")
    monkeypatch.setenv("FLOWGATE_LOCK_BACKEND", "Redis")

    config = load_config()
    assert config.engine.callback_secret == "env-secret"
    assert config.database_url == "sqlite:///env.db"
    assert config.locks.backend == "redis"


def test_defaults_without_file():
    config = load_config()
    assert config.locks.backend == "inmemory"
    assert config.engine.max_trigger_depth == 5
    assert config.database_url is None


def test_get_run_lock_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
locks:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("FLOWGATE_CONFIG", str(config_path))

    lock = get_run_lock()
    assert isinstance(lock, RedisRunLock)
    assert lock.host == "confighost"
    assert lock.port == 6380
    assert isinstance(get_run_lock("inmemory"), InMemoryRunLock)
    with pytest.raises(ValueError):
        get_run_lock("zookeeper")


def test_get_repository_selects_backend(tmp_path):
    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    assert get_repository() is get_repository()

    repo = get_repository(f"sqlite:///{tmp_path / 'wf.db'}")
    assert isinstance(repo, SQLWorkflowRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
