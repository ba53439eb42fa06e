"""
Execution Engine - Adapter Registry and Dispatcher
===================================================

Routes a Command to the adapter for its target, applies retry policies,
and normalizes thrown vs. returned failures.

Features:
- Default adapters (local, ssh, docker, remote-docker) sharing one
  constructor-owned SSH connection pool
- Custom adapters via register_adapter()
- Per-command or engine-bound retry policies (engine.retry(policy))
- Lifecycle events: command:start, command:complete, command:error, command:retry
- Async context manager that disposes every adapter on exit

Usage:
    async with ExecutionEngine() as engine:
        result = await engine.run("uname -a")
        result = await engine.execute(Command(
            command="systemctl status nginx",
            adapter_options=SSHOptions(host="web-1", username="ops", password="..."),
            nothrow=True,
        ))
"""

import asyncio
import copy
import logging
import random
from typing import Optional, Dict, Any, List

from .adapters import BaseAdapter, LocalAdapter, SSHAdapter, DockerAdapter, RemoteDockerAdapter
from .command import Command, LocalOptions, SSHOptions, DockerOptions, RemoteDockerOptions
from .config import EngineConfig
from .connection_pool import ConnectionPool
from .errors import AdapterError, CommandError, ConfigurationError
from .events import EventEmitter, EventType
from .masking import SensitiveDataMasker
from .result import ExecutionResult
from .retry import RetryPolicy, execute_with_retry, Sleep
from .ssh_client import SSHConnector
from .tunnel import Tunnel

logger = logging.getLogger(__name__)


def target_adapter_name(options: Any) -> str:
    """Adapter name for an adapter_options variant"""
    if isinstance(options, LocalOptions):
        return "local"
    if isinstance(options, SSHOptions):
        return "ssh"
    if isinstance(options, DockerOptions):
        return "docker"
    if isinstance(options, RemoteDockerOptions):
        return "remote-docker"
    raise ConfigurationError(f"Unknown target options: {type(options).__name__}")


# ============================================================
# RETRYING ADAPTER
# ============================================================

class RetryingAdapter(BaseAdapter):
    """
    Applies a retry policy to any adapter, outside of an engine.

    A policy on the command itself wins over the wrapped policy.
    """

    def __init__(
        self,
        adapter: BaseAdapter,
        policy: RetryPolicy,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(adapter.config, adapter.events)
        self.adapter = adapter
        self.policy = policy
        self.name = adapter.name
        self._sleep = sleep
        self._rng = rng

    async def is_available(self) -> bool:
        return await self.adapter.is_available()

    async def execute(self, command: Command) -> ExecutionResult:
        command = command.with_buffered_stdin(self.config.encoding)
        return await execute_with_retry(
            lambda: self.adapter.execute(command),
            command.retry or self.policy,
            nothrow=self._nothrow(command),
            adapter=self.name,
            command=self._mask(command.to_shell_string()),
            sleep=self._sleep,
            rng=self._rng,
        )

    async def dispose(self) -> None:
        await self.adapter.dispose()


def with_retry(
    adapter: BaseAdapter,
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> RetryingAdapter:
    return RetryingAdapter(adapter, policy, sleep=sleep, rng=rng)


# ============================================================
# ENGINE
# ============================================================

class ExecutionEngine:
    """Registry + dispatcher for execution adapters"""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        events: Optional[EventEmitter] = None,
        pool: Optional[ConnectionPool] = None,
        register_defaults: bool = True,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or EngineConfig()
        self.events = events or EventEmitter()
        self._sleep = sleep
        self._rng = rng
        self._retry_policy: Optional[RetryPolicy] = None
        self._masker = SensitiveDataMasker() if self.config.mask_sensitive_data else None

        self._owns_pool = pool is None
        if pool is None:
            pool_config = self.config.pool
            connector = SSHConnector(
                keep_alive_interval=pool_config.keep_alive_interval if pool_config.keep_alive else None,
                events=self.events,
            )
            pool = ConnectionPool.from_config(pool_config, connector, self.events)
        self.pool = pool

        self._adapters: Dict[str, BaseAdapter] = {}
        if register_defaults:
            self.register_adapter("local", LocalAdapter(self.config, self.events))
            self.register_adapter("ssh", SSHAdapter(self.config, self.events, pool=self.pool))
            self.register_adapter("docker", DockerAdapter(self.config, self.events))
            self.register_adapter("remote-docker", RemoteDockerAdapter(self.config, self.events, pool=self.pool))

    @classmethod
    def from_env(cls, prefix: str = "XEC_", dotenv_path: Optional[str] = None, **kwargs) -> "ExecutionEngine":
        """Engine configured from XEC_* environment variables and .env"""
        return cls(config=EngineConfig.from_env(prefix, dotenv_path), **kwargs)

    async def __aenter__(self) -> "ExecutionEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    # =========================================================
    # REGISTRY
    # =========================================================

    def register_adapter(self, name: str, adapter: BaseAdapter) -> None:
        if name in self._adapters:
            logger.info(f"Replacing adapter: {name}")
        self._adapters[name] = adapter
        logger.debug(f"Registered adapter: {name} ({type(adapter).__name__})")

    def get_adapter(self, name: str) -> Optional[BaseAdapter]:
        return self._adapters.get(name)

    @property
    def adapters(self) -> List[str]:
        return list(self._adapters)

    def select_adapter(self, command: Command) -> BaseAdapter:
        """The explicitly named adapter, else the one matching the target type"""
        name = command.adapter or target_adapter_name(command.adapter_options)
        adapter = self._adapters.get(name)
        if adapter is None:
            raise AdapterError(name, "select", f"No adapter registered for {name!r}")
        return adapter

    async def is_available(self, name: str) -> bool:
        adapter = self._adapters.get(name)
        return adapter is not None and await adapter.is_available()

    # =========================================================
    # EXECUTION
    # =========================================================

    def retry(self, policy: RetryPolicy) -> "ExecutionEngine":
        """
        Derived engine applying policy to every command without its own.

        The derived engine shares adapters, pool and events with this one.
        """
        derived = copy.copy(self)
        derived._retry_policy = policy
        return derived

    def _nothrow(self, command: Command) -> bool:
        if command.nothrow is not None:
            return command.nothrow
        return not self.config.throw_on_non_zero_exit

    def _mask(self, text: str) -> str:
        return self._masker.mask(text) if self._masker else text

    async def execute(self, command: Command) -> ExecutionResult:
        adapter = self.select_adapter(command)
        nothrow = self._nothrow(command)
        policy = command.retry or self._retry_policy
        if policy is not None and policy.max_retries > 0:
            command = command.with_buffered_stdin(self.config.encoding)
        shown = self._mask(command.to_shell_string())

        self.events.emit(EventType.COMMAND_START, {"command": shown, "adapter": adapter.name})

        def on_attempt_failed(attempt: int, result: ExecutionResult, delay: float) -> None:
            self.events.emit(EventType.COMMAND_RETRY, {
                "command": shown,
                "adapter": adapter.name,
                "attempt": attempt,
                "exit_code": result.exit_code,
                "delay": delay,
            })

        try:
            if policy is not None and policy.max_retries > 0:
                result = await execute_with_retry(
                    lambda: adapter.execute(command),
                    policy,
                    nothrow=nothrow,
                    adapter=adapter.name,
                    command=shown,
                    sleep=self._sleep,
                    rng=self._rng,
                    on_attempt_failed=on_attempt_failed,
                )
            else:
                result = await adapter.execute(command)

            if not result.ok and not nothrow:
                raise CommandError(result)
        except Exception as e:
            logger.debug(f"Command failed on {adapter.name}: {e}")
            self.events.emit(EventType.COMMAND_ERROR, {
                "command": shown,
                "adapter": adapter.name,
                "error": str(e),
                "code": getattr(e, "code", type(e).__name__),
            })
            raise

        self.events.emit(EventType.COMMAND_COMPLETE, {
            "command": shown,
            "adapter": adapter.name,
            "exit_code": result.exit_code,
            "duration_ms": result.duration_ms,
        })
        return result

    async def run(self, command: str, **fields: Any) -> ExecutionResult:
        """Shorthand for execute(Command(command=..., **fields))"""
        return await self.execute(Command(command=command, **fields))

    async def tunnel(
        self,
        ssh_options: SSHOptions,
        remote_host: str,
        remote_port: int,
        local_port: int = 0,
        local_host: str = "127.0.0.1",
    ) -> Tunnel:
        """Connect to ssh_options explicitly, then forward local_port to remote_host:remote_port"""
        adapter = self._adapters.get("ssh")
        if not isinstance(adapter, SSHAdapter):
            raise AdapterError("ssh", "tunnel", "No SSH adapter registered")
        await adapter.connect(ssh_options)
        return await adapter.tunnel(remote_host, remote_port, local_port, local_host, options=ssh_options)

    async def dispose(self) -> None:
        """Dispose every adapter, then the shared pool; never raises"""
        seen = set()
        for name, adapter in list(self._adapters.items()):
            if id(adapter) in seen:
                continue
            seen.add(id(adapter))
            try:
                await adapter.dispose()
            except Exception as e:
                logger.warning(f"Failed to dispose adapter {name}: {e}")

        if self._owns_pool:
            try:
                await self.pool.dispose()
            except Exception as e:
                logger.warning(f"Failed to dispose connection pool: {e}")
        logger.info("Execution engine disposed")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "adapters": self.adapters,
            "pool": self.pool.get_stats(),
            "events": self.events.get_stats(),
        }
