"""
SSH Client - Paramiko Sessions for the Pool
============================================

Features:
- Key-based (file or in-memory material) and password authentication
- Pre-flight validation of options and keys
- Transport keep-alive
- One channel per exec, so concurrent commands never share stdio
- direct-tcpip channels for port forwarding
- SFTP access
"""

import io
import os
import time
import socket
import logging
import asyncio
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy, RejectPolicy, RSAKey, Ed25519Key, ECDSAKey

from .command import SSHOptions
from .errors import SSHConnectionError, ConfigurationError
from .events import EventEmitter, EventType
from .ssh_key_validator import (
    validate_ssh_options,
    validate_private_key,
    validate_key_file,
)

logger = logging.getLogger(__name__)

READ_CHUNK = 32768
POLL_INTERVAL = 0.01
DEFAULT_KEEP_ALIVE_INTERVAL = 30.0


@dataclass
class RemoteOutput:
    """Raw output of one remote exec"""
    stdout: bytes
    stderr: bytes
    exit_code: Optional[int]
    aborted: bool = False


class SSHSession:
    """An authenticated paramiko client owned by the connection pool"""

    def __init__(self, client: SSHClient, options: SSHOptions):
        self.client = client
        self.options = options

    @property
    def host(self) -> str:
        return self.options.host or ""

    def is_alive(self) -> bool:
        try:
            transport = self.client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    def _transport(self, operation: str) -> paramiko.Transport:
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            raise SSHConnectionError(self.host, "transport is not active", operation)
        return transport

    def exec_command(
        self,
        command: str,
        stdin: Optional[bytes] = None,
        stop: Optional[threading.Event] = None,
    ) -> RemoteOutput:
        """
        Run a command on a fresh channel and collect its output.

        Blocking; call from an executor thread. Setting ``stop`` closes the
        channel and returns whatever was read so far with aborted=True.
        """
        channel = self._transport("exec").open_session()
        stdout_data = []
        stderr_data = []

        try:
            channel.exec_command(command)
            if stdin:
                channel.sendall(stdin)
            channel.shutdown_write()

            while True:
                if stop is not None and stop.is_set():
                    return RemoteOutput(b"".join(stdout_data), b"".join(stderr_data), None, aborted=True)

                received = False
                if channel.recv_ready():
                    stdout_data.append(channel.recv(READ_CHUNK))
                    received = True
                if channel.recv_stderr_ready():
                    stderr_data.append(channel.recv_stderr(READ_CHUNK))
                    received = True

                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if not received:
                    time.sleep(POLL_INTERVAL)  # Small delay to prevent busy-waiting

            exit_code = channel.recv_exit_status()
            return RemoteOutput(b"".join(stdout_data), b"".join(stderr_data), exit_code)
        finally:
            try:
                channel.close()
            except Exception:
                pass

    def open_forward_channel(
        self,
        remote_host: str,
        remote_port: int,
        origin: Tuple[str, int],
    ) -> paramiko.Channel:
        return self._transport("forward").open_channel("direct-tcpip", (remote_host, remote_port), origin)

    def open_sftp(self) -> paramiko.SFTPClient:
        return self.client.open_sftp()

    def close(self):
        self.client.close()


class SSHConnector:
    """
    Creates SSHSessions for the pool.

    Usage:
        pool = ConnectionPool(connect=SSHConnector(events=events))
    """

    def __init__(
        self,
        keep_alive_interval: Optional[float] = 30.0,
        banner_timeout: float = 60.0,
        auth_timeout: float = 30.0,
        events: Optional[EventEmitter] = None,
    ):
        self.keep_alive_interval = keep_alive_interval
        self.banner_timeout = banner_timeout
        self.auth_timeout = auth_timeout
        self.events = events

    async def __call__(self, options: SSHOptions) -> SSHSession:
        self.validate(options)
        loop = asyncio.get_running_loop()
        client = await loop.run_in_executor(None, self._create_client, options)
        return SSHSession(client, options)

    def validate(self, options: SSHOptions) -> None:
        """Raise ConfigurationError for options that cannot possibly connect"""
        result = validate_ssh_options(options)
        if not result.is_valid:
            raise ConfigurationError("Invalid SSH options", result.issues)

        if options.private_key:
            key_check = validate_private_key(options.private_key, options.passphrase)
        elif options.private_key_path:
            key_check = validate_key_file(options.private_key_path, options.passphrase)
        else:
            return

        if not key_check.is_valid:
            raise ConfigurationError("Invalid SSH private key", key_check.issues)
        for issue in key_check.issues:
            logger.warning(f"SSH key for {options.host}: {issue}")

        if self.events is not None:
            self.events.emit(
                EventType.SSH_KEY_VALIDATED,
                {"host": options.host, "key_type": key_check.key_type or "unknown", "username": options.username},
                source="ssh",
            )

    def keep_alive_for(self, options: SSHOptions) -> Optional[float]:
        """Keep-alive interval for this target; a per-target keep_alive flag overrides the connector default"""
        overrides = options.connection_pool
        if overrides is None or overrides.keep_alive is None:
            return self.keep_alive_interval
        if not overrides.keep_alive:
            return None
        return self.keep_alive_interval or DEFAULT_KEEP_ALIVE_INTERVAL

    def _load_key(self, options: SSHOptions) -> Optional[paramiko.PKey]:
        key_classes = [RSAKey, Ed25519Key, ECDSAKey]

        if options.private_key:
            material = options.private_key
            if isinstance(material, bytes):
                material = material.decode("utf-8")
            for key_class in key_classes:
                try:
                    return key_class.from_private_key(io.StringIO(material), password=options.passphrase)
                except Exception:
                    continue
            raise ConfigurationError("Invalid SSH private key", ["Unable to load private key material"])

        key_path = os.path.expanduser(options.private_key_path)
        for key_class in key_classes:
            try:
                return key_class.from_private_key_file(key_path, password=options.passphrase)
            except Exception:
                continue
        return None

    def _create_client(self, options: SSHOptions) -> SSHClient:
        """Create and connect a paramiko client (blocking)"""
        client = SSHClient()
        if options.strict_host_key_checking:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(RejectPolicy())
        else:
            client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            "hostname": options.host,
            "port": options.port,
            "username": options.username,
            "timeout": options.connect_timeout,
            "banner_timeout": self.banner_timeout,
            "auth_timeout": self.auth_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }

        if options.password:
            connect_kwargs["password"] = options.password
        else:
            key = self._load_key(options)
            if key:
                connect_kwargs["pkey"] = key
            else:
                # Fall back to letting paramiko auto-detect
                connect_kwargs["key_filename"] = os.path.expanduser(options.private_key_path)
                if options.passphrase:
                    connect_kwargs["passphrase"] = options.passphrase

        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise SSHConnectionError(options.host, f"Authentication failed: {e}") from e
        except (socket.timeout, paramiko.SSHException, OSError) as e:
            client.close()
            raise SSHConnectionError(options.host, str(e)) from e

        interval = self.keep_alive_for(options)
        if interval:
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(int(interval))

        logger.info(f"SSH connected: {options.pool_key}")
        return client
