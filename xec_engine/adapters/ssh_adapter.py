"""
SSH Adapter - Remote Execution over Pooled Connections
=======================================================

Features:
- Commands run on a fresh channel of a pooled paramiko connection
- Environment exports, working directory and sudo wrapping
- Timeout and cancellation close the channel, not the connection
- Broken transports are retired from the pool
- SFTP upload/download
- Local port forwarding (tunnels) over the last used connection
"""

import asyncio
import logging
import re
import shlex
import threading
from typing import Optional, Tuple, Dict

import paramiko

from ..command import Command, SSHOptions
from ..connection_pool import ConnectionPool
from ..errors import AdapterError, SSHConnectionError, ConfigurationError
from ..result import ExecutionResult
from ..ssh_client import SSHConnector, SSHSession, RemoteOutput
from ..tunnel import TunnelManager, Tunnel
from .base_adapter import BaseAdapter, Stopwatch, wait_with_deadline

logger = logging.getLogger(__name__)

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError)


async def run_remote(
    session: SSHSession,
    command: str,
    stdin: Optional[bytes] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> RemoteOutput:
    """Run one command on its own channel, closing the channel on timeout or abort"""
    loop = asyncio.get_running_loop()
    stop = threading.Event()
    future = loop.run_in_executor(None, session.exec_command, command, stdin, stop)
    return await wait_with_deadline(
        future,
        timeout=timeout,
        cancel_event=cancel_event,
        on_abort=stop.set,
        command=command,
    )


def wrap_sudo(line: str, options: SSHOptions, stdin: Optional[bytes]) -> Tuple[str, Optional[bytes]]:
    """Run line under sudo -S, feeding the password ahead of any stdin"""
    sudo = options.sudo
    if sudo is None or not sudo.enabled:
        return line, stdin

    parts = ["sudo", "-S", "-p", "''"]
    if sudo.user:
        parts.extend(["-u", shlex.quote(sudo.user)])
    parts.extend(["--", "/bin/sh", "-c", shlex.quote(line)])

    if sudo.password:
        stdin = sudo.password.encode() + b"\n" + (stdin or b"")
    return " ".join(parts), stdin


class SSHAdapter(BaseAdapter):
    """
    Executes commands on remote hosts.

    Connections come from a ConnectionPool; the adapter creates its own
    unless one is injected (the engine shares one pool between adapters).

    Usage:
        adapter = SSHAdapter()
        result = await adapter.execute(Command(
            command="uptime",
            adapter_options=SSHOptions(host="10.0.0.5", username="deploy", private_key_path="~/.ssh/id_ed25519"),
        ))
        tunnel = await adapter.tunnel("db.internal", 5432)
    """

    name = "ssh"

    def __init__(
        self,
        config=None,
        events=None,
        pool: Optional[ConnectionPool] = None,
        connector: Optional[SSHConnector] = None,
    ):
        super().__init__(config, events)
        self._owns_pool = pool is None
        if pool is None:
            pool_config = self.config.pool
            connector = connector or SSHConnector(
                keep_alive_interval=pool_config.keep_alive_interval if pool_config.keep_alive else None,
                events=self.events,
            )
            pool = ConnectionPool.from_config(pool_config, connector, self.events)
        self.pool = pool
        self.tunnels = TunnelManager(pool, self.events, adapter=self.name)
        self._last_options: Optional[SSHOptions] = None

    @property
    def active_tunnels(self) -> Dict[str, Tunnel]:
        return self.tunnels.active_tunnels

    async def is_available(self) -> bool:
        return not self.pool.closed

    # =========================================================
    # CONNECTIONS
    # =========================================================

    async def connect(self, options: SSHOptions) -> None:
        """Establish (or reuse) the pooled connection for options"""
        conn = await self.pool.acquire(options)
        self._last_options = options
        self.pool.release(conn)

    async def _run_on_host(
        self,
        options: SSHOptions,
        remote_command: str,
        stdin: Optional[bytes],
        timeout: Optional[float],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RemoteOutput:
        conn = await self.pool.acquire(options)
        self._last_options = options
        try:
            return await run_remote(conn.client, remote_command, stdin, timeout, cancel_event)
        except asyncio.TimeoutError:
            # TimeoutError subclasses OSError on 3.11+
            raise
        except SSHConnectionError:
            conn.errors += 1
            self.pool.invalidate(conn)
            raise
        except TRANSPORT_ERRORS as e:
            conn.errors += 1
            self.pool.invalidate(conn)
            raise SSHConnectionError(options.host or "", str(e) or type(e).__name__, operation="exec") from e
        finally:
            self.pool.release(conn, discard=not self.config.pool.enabled)

    def _ssh_options(self, command: Command) -> SSHOptions:
        options = command.adapter_options
        if not isinstance(options, SSHOptions):
            raise ConfigurationError("The ssh adapter requires ssh options", [f"got type {command.target_type!r}"])
        return options

    def _remote_command(self, command: Command, options: SSHOptions) -> Tuple[str, Optional[bytes]]:
        line = command.to_shell_string()
        shell = self._shell(command)
        if isinstance(shell, str):
            line = f"{shell} -c {shlex.quote(line)}"

        cwd = self._cwd(command)
        if cwd:
            line = f"cd {shlex.quote(cwd)} && {line}"

        exports = []
        for key, value in self._env(command).items():
            if not ENV_NAME_PATTERN.match(key):
                raise ConfigurationError("Invalid environment variable name", [key])
            exports.append(f"export {key}={shlex.quote(value)}; ")
        line = "".join(exports) + line

        return wrap_sudo(line, options, command.stdin_bytes(self.config.encoding))

    # =========================================================
    # EXECUTION
    # =========================================================

    async def execute(self, command: Command) -> ExecutionResult:
        options = self._ssh_options(command)
        watch = Stopwatch()
        timeout = self._timeout(command)
        remote_command, stdin = self._remote_command(command, options)

        logger.debug(f"[ssh] {options.pool_key}: {command.to_shell_string()}")
        try:
            output = await self._run_on_host(options, remote_command, stdin, timeout, command.cancel_event)
        except asyncio.TimeoutError:
            return self._timeout_outcome(command, watch, timeout, host=options.host)
        except SSHConnectionError as e:
            return self._failure_outcome(command, watch, e, host=options.host)

        result = self._build_result(
            command, watch, output.stdout, output.stderr, output.exit_code, host=options.host
        )
        return self._finalize(command, result)

    # =========================================================
    # FILE TRANSFER
    # =========================================================

    async def upload_file(self, local_path: str, remote_path: str, options: Optional[SSHOptions] = None) -> None:
        await self._transfer("upload", "put", local_path, remote_path, options)

    async def download_file(self, remote_path: str, local_path: str, options: Optional[SSHOptions] = None) -> None:
        await self._transfer("download", "get", remote_path, local_path, options)

    async def _transfer(self, operation: str, method: str, source: str, target: str, options: Optional[SSHOptions]):
        options = options or self._last_options
        if options is None:
            raise AdapterError(self.name, operation, "No SSH connection available. Pass options or execute a command first")

        conn = await self.pool.acquire(options)
        self._last_options = options
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._sftp_call, conn.client, method, source, target)
            logger.info(f"[ssh] {operation} {source} -> {target} via {conn.key}")
        except (OSError, paramiko.SSHException) as e:
            raise AdapterError(self.name, operation, f"Failed to {operation} {source} to {target}: {e}") from e
        finally:
            self.pool.release(conn)

    @staticmethod
    def _sftp_call(session: SSHSession, method: str, source: str, target: str) -> None:
        sftp = session.open_sftp()
        try:
            getattr(sftp, method)(source, target)
        finally:
            sftp.close()

    # =========================================================
    # TUNNELS
    # =========================================================

    async def tunnel(
        self,
        remote_host: str,
        remote_port: int,
        local_port: int = 0,
        local_host: str = "127.0.0.1",
        options: Optional[SSHOptions] = None,
    ) -> Tunnel:
        """Forward a local port through the last used (or given) connection"""
        return await self.tunnels.open(options or self._last_options, remote_host, remote_port, local_port, local_host)

    async def dispose(self) -> None:
        try:
            await self.tunnels.close_all()
        except Exception as e:
            logger.warning(f"[{self.name}] Failed to close tunnels: {e}")
        if self._owns_pool:
            try:
                await self.pool.dispose()
            except Exception as e:
                logger.warning(f"[{self.name}] Failed to dispose connection pool: {e}")
