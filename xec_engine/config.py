"""
Engine Configuration
====================

Defaults shared by every adapter, plus connection pool tuning.
Values can be read from the environment (and a local .env file):

    XEC_DEFAULT_TIMEOUT=60
    XEC_SHELL=true
    XEC_POOL_MAX_CONNECTIONS=20
    XEC_POOL_IDLE_TIMEOUT=120
    XEC_LOG_LEVEL=DEBUG
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a basic log format for applications embedding the engine"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid value for {name}: {value!r}")
        return default


def _env_int(name: str, default: int) -> int:
    value = _env_float(name, None)
    return default if value is None else int(value)


@dataclass
class PoolConfig:
    """SSH connection pool settings (seconds)"""
    enabled: bool = True
    max_connections: int = 10
    idle_timeout: float = 300.0
    max_lifetime: float = 3600.0
    keep_alive: bool = True
    keep_alive_interval: float = 30.0
    acquire_timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        if self.idle_timeout < 0:
            raise ValueError("idle_timeout must not be negative")


@dataclass
class EngineConfig:
    """Defaults applied to every command unless the command overrides them"""
    default_timeout: Optional[float] = 120.0
    default_cwd: Optional[str] = None
    default_env: Dict[str, str] = field(default_factory=dict)
    default_shell: bool = True
    encoding: str = "utf-8"
    throw_on_non_zero_exit: bool = True
    mask_sensitive_data: bool = True
    docker_path: str = "docker"
    log_level: str = "INFO"
    pool: PoolConfig = field(default_factory=PoolConfig)

    @classmethod
    def from_env(cls, prefix: str = "XEC_", dotenv_path: Optional[str] = None) -> "EngineConfig":
        """Build a config from environment variables, loading .env first"""
        load_dotenv(dotenv_path)

        timeout = _env_float(f"{prefix}DEFAULT_TIMEOUT", 120.0)
        pool = PoolConfig(
            enabled=_env_bool(f"{prefix}POOL_ENABLED", True),
            max_connections=_env_int(f"{prefix}POOL_MAX_CONNECTIONS", 10),
            idle_timeout=_env_float(f"{prefix}POOL_IDLE_TIMEOUT", 300.0),
            max_lifetime=_env_float(f"{prefix}POOL_MAX_LIFETIME", 3600.0),
            keep_alive=_env_bool(f"{prefix}POOL_KEEP_ALIVE", True),
            keep_alive_interval=_env_float(f"{prefix}POOL_KEEP_ALIVE_INTERVAL", 30.0),
            acquire_timeout=_env_float(f"{prefix}POOL_ACQUIRE_TIMEOUT", None),
        )

        return cls(
            default_timeout=timeout if timeout and timeout > 0 else None,
            default_cwd=os.getenv(f"{prefix}DEFAULT_CWD") or None,
            default_shell=_env_bool(f"{prefix}SHELL", True),
            encoding=os.getenv(f"{prefix}ENCODING", "utf-8"),
            throw_on_non_zero_exit=_env_bool(f"{prefix}THROW_ON_NON_ZERO_EXIT", True),
            mask_sensitive_data=_env_bool(f"{prefix}MASK_SENSITIVE_DATA", True),
            docker_path=os.getenv(f"{prefix}DOCKER_PATH", "docker"),
            log_level=os.getenv(f"{prefix}LOG_LEVEL", "INFO"),
            pool=pool,
        )
