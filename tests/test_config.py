import pytest

from xec_engine.config import EngineConfig, PoolConfig
from xec_engine.connection_pool import ConnectionPool

from fakes import FakeConnector


def test_defaults():
    config = EngineConfig()

    assert config.default_timeout == 120.0
    assert config.throw_on_non_zero_exit
    assert config.pool.max_connections == 10
    assert config.pool.idle_timeout == 300.0


@pytest.mark.parametrize("kwargs", [{"max_connections": 0}, {"idle_timeout": -1}])
def test_pool_config_validation(kwargs):
    with pytest.raises(ValueError):
        PoolConfig(**kwargs)


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("APP_DEFAULT_TIMEOUT", "0")
    monkeypatch.setenv("APP_SHELL", "no")
    monkeypatch.setenv("APP_POOL_IDLE_TIMEOUT", "45")
    monkeypatch.setenv("APP_POOL_ACQUIRE_TIMEOUT", "2.5")
    monkeypatch.setenv("APP_DOCKER_PATH", "/usr/local/bin/docker")

    config = EngineConfig.from_env("APP_", dotenv_path=str(tmp_path / "missing.env"))

    assert config.default_timeout is None
    assert config.default_shell is False
    assert config.pool.idle_timeout == 45.0
    assert config.pool.acquire_timeout == 2.5
    assert config.docker_path == "/usr/local/bin/docker"


def test_from_env_reads_dotenv_file(monkeypatch, tmp_path):
    # Registered with monkeypatch so values loaded from the file are removed afterwards
    for name in ("DOTENV_POOL_MAX_CONNECTIONS", "DOTENV_LOG_LEVEL"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    env_file = tmp_path / ".env"
    env_file.write_text("DOTENV_POOL_MAX_CONNECTIONS=4\nDOTENV_LOG_LEVEL=DEBUG\n")

    config = EngineConfig.from_env("DOTENV_", dotenv_path=str(env_file))

    assert config.pool.max_connections == 4
    assert config.log_level == "DEBUG"


def test_invalid_number_falls_back_to_default(monkeypatch, tmp_path):
    monkeypatch.setenv("BAD_POOL_IDLE_TIMEOUT", "soon")

    config = EngineConfig.from_env("BAD_", dotenv_path=str(tmp_path / "missing.env"))

    assert config.pool.idle_timeout == 300.0


def test_pool_built_from_config():
    pool = ConnectionPool.from_config(PoolConfig(max_connections=2, idle_timeout=5.0), FakeConnector())

    assert pool.get_stats()["max_connections"] == 2
