"""
xec_engine - Unified Command Execution
=======================================

Run a command against a local process, a remote host over SSH, a Docker
container, or a Docker container behind an SSH hop through one execute()
contract.

Usage:
    from xec_engine import ExecutionEngine, Command, SSHOptions, RetryPolicy

    async with ExecutionEngine() as engine:
        result = await engine.run("uname -a")

        result = await engine.retry(RetryPolicy(max_retries=2)).execute(Command(
            command="curl -fsS localhost:8080/health",
            adapter_options=SSHOptions(host="web-1", username="ops", private_key_path="~/.ssh/ops"),
        ))

        tunnel = await engine.tunnel(SSHOptions(host="bastion", username="ops", password="..."), "db.internal", 5432)
        ...
        await tunnel.close()
"""

from .command import (
    Command,
    LocalOptions,
    SSHOptions,
    SudoOptions,
    ConnectionPoolOptions,
    DockerOptions,
    DockerTarget,
    AutoCreateOptions,
    RemoteDockerOptions,
)

from .config import EngineConfig, PoolConfig, configure_logging

from .errors import (
    ExecutionError,
    CommandError,
    CommandTimeoutError,
    CommandAbortedError,
    AdapterError,
    SSHConnectionError,
    PoolExhaustedError,
    TunnelError,
    DockerError,
    ConfigurationError,
    RetryError,
)

from .result import ExecutionResult
from .retry import RetryPolicy, execute_with_retry
from .events import EventEmitter, EventType, Event
from .masking import SensitiveDataMasker
from .connection_pool import ConnectionPool, PooledConnection
from .tunnel import Tunnel, TunnelManager
from .ssh_client import SSHConnector, SSHSession

from .adapters import (
    BaseAdapter,
    LocalAdapter,
    SSHAdapter,
    DockerAdapter,
    RemoteDockerAdapter,
)

from .engine import ExecutionEngine, RetryingAdapter, with_retry
from .targets import TargetConfig, TargetRegistry

__all__ = [
    # Models
    "Command",
    "LocalOptions",
    "SSHOptions",
    "SudoOptions",
    "ConnectionPoolOptions",
    "DockerOptions",
    "DockerTarget",
    "AutoCreateOptions",
    "RemoteDockerOptions",
    "ExecutionResult",

    # Configuration
    "EngineConfig",
    "PoolConfig",
    "configure_logging",
    "TargetConfig",
    "TargetRegistry",

    # Errors
    "ExecutionError",
    "CommandError",
    "CommandTimeoutError",
    "CommandAbortedError",
    "AdapterError",
    "SSHConnectionError",
    "PoolExhaustedError",
    "TunnelError",
    "DockerError",
    "ConfigurationError",
    "RetryError",

    # Engine and adapters
    "ExecutionEngine",
    "BaseAdapter",
    "LocalAdapter",
    "SSHAdapter",
    "DockerAdapter",
    "RemoteDockerAdapter",
    "RetryingAdapter",
    "with_retry",

    # Retry
    "RetryPolicy",
    "execute_with_retry",

    # SSH
    "ConnectionPool",
    "PooledConnection",
    "SSHConnector",
    "SSHSession",
    "Tunnel",
    "TunnelManager",

    # Events and masking
    "EventEmitter",
    "EventType",
    "Event",
    "SensitiveDataMasker",
]

__version__ = "1.0.0"
