"""
Tunnel Manager - Local Port Forwarding over SSH
================================================

Features:
- Local listener (port 0 picks an ephemeral port) forwarding each accepted
  socket through its own direct-tcpip channel
- Tunnels borrow their SSH connection from the pool for their whole life
- Idempotent close; tunnels close themselves when the connection drops
- Created/closed events delivered before tunnel()/close() return
- close_all() keeps going when one tunnel fails to close
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Set

from .command import SSHOptions
from .connection_pool import ConnectionPool, PooledConnection
from .errors import TunnelError
from .events import EventEmitter, EventType

logger = logging.getLogger(__name__)

READ_CHUNK = 32768
SERVER_CLOSE_TIMEOUT = 5.0


class Tunnel:
    """One local-port to remote-host:port forward"""

    def __init__(
        self,
        manager: "TunnelManager",
        connection: PooledConnection,
        local_host: str,
        local_port: int,
        remote_host: str,
        remote_port: int,
    ):
        self._manager = manager
        self.connection = connection
        self.local_host = local_host
        self.local_port = local_port
        self.remote_host = remote_host
        self.remote_port = remote_port
        self._server: Optional[asyncio.AbstractServer] = None
        self._channels: Set[Any] = set()
        self._handlers: Set[asyncio.Task] = set()
        self._closed = False
        self._connection_lost = False

    @property
    def id(self) -> str:
        return f"{self.local_host}:{self.local_port}-{self.remote_host}:{self.remote_port}"

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._connection_lost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "local_host": self.local_host,
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_port": self.remote_port,
            "is_open": self.is_open,
        }

    async def __aenter__(self) -> "Tunnel":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================
    # FORWARDING
    # =========================================================

    async def _start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self.local_host, self.local_port)
        self.local_port = self._server.sockets[0].getsockname()[1]

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if self._closed:
            writer.close()
            return

        self._handlers.add(task)
        loop = asyncio.get_running_loop()
        peer = writer.get_extra_info("peername") or ("127.0.0.1", 0)
        channel = None

        try:
            channel = await loop.run_in_executor(
                None,
                self.connection.client.open_forward_channel,
                self.remote_host,
                self.remote_port,
                (peer[0], peer[1]),
            )
            self._channels.add(channel)
            results = await asyncio.gather(
                self._pump_to_remote(reader, channel),
                self._pump_to_local(channel, writer),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.debug(f"Tunnel {self.id} stream ended with error: {result}")
        except Exception as e:
            logger.warning(f"Tunnel {self.id} could not forward to {self.remote_host}:{self.remote_port}: {e}")
            if not self.connection.client.is_alive():
                self._manager._schedule_close(self)
        finally:
            if channel is not None:
                self._channels.discard(channel)
                self._close_channel(channel)
            writer.close()
            self._handlers.discard(task)

    async def _pump_to_remote(self, reader: asyncio.StreamReader, channel) -> None:
        loop = asyncio.get_running_loop()
        while True:
            data = await reader.read(READ_CHUNK)
            if not data:
                break
            await loop.run_in_executor(None, channel.sendall, data)
        await loop.run_in_executor(None, channel.shutdown_write)

    async def _pump_to_local(self, channel, writer: asyncio.StreamWriter) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                data = await loop.run_in_executor(None, channel.recv, READ_CHUNK)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    def _close_channel(self, channel) -> None:
        try:
            channel.close()
        except Exception as e:
            logger.debug(f"Error closing forward channel on {self.id}: {e}")

    # =========================================================
    # CLOSE
    # =========================================================

    async def close(self) -> None:
        """Stop listening and tear down forwards; safe to call repeatedly"""
        if self._closed:
            return
        self._closed = True
        self._manager._forget(self)

        if self._server is not None:
            self._server.close()
        for channel in list(self._channels):
            self._close_channel(channel)
        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), SERVER_CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Tunnel {self.id} listener did not shut down within {SERVER_CLOSE_TIMEOUT}s")

        self._manager.pool.release(self.connection)
        logger.info(f"Tunnel closed: {self.local_host}:{self.local_port} -> {self.remote_host}:{self.remote_port}")
        self._manager._emit_closed(self)


class TunnelManager:
    """
    Opens and tracks tunnels for one adapter.

    Usage:
        manager = TunnelManager(pool, events)
        tunnel = await manager.open(options, "db.internal", 5432)
        ...
        await tunnel.close()
    """

    def __init__(self, pool: ConnectionPool, events: Optional[EventEmitter] = None, adapter: str = "ssh"):
        self.pool = pool
        self.events = events
        self.adapter = adapter
        self.active_tunnels: Dict[str, Tunnel] = {}
        self._background: Set[asyncio.Task] = set()

    async def open(
        self,
        options: Optional[SSHOptions],
        remote_host: str,
        remote_port: int,
        local_port: int = 0,
        local_host: str = "127.0.0.1",
    ) -> Tunnel:
        """Forward local_host:local_port to remote_host:remote_port"""
        if options is None:
            raise TunnelError(
                "unknown",
                "No SSH connection available. Execute a command first or establish a connection",
            )
        if not self.pool.has_connection(options):
            raise TunnelError(
                options.host or "unknown",
                f"No SSH connection to {options.pool_key}. Execute a command first or establish a connection",
            )

        connection = await self.pool.acquire(options)
        tunnel = Tunnel(self, connection, local_host, local_port, remote_host, remote_port)
        try:
            await tunnel._start()
        except OSError as e:
            self.pool.release(connection)
            raise TunnelError(
                options.host or "unknown", f"cannot listen on {local_host}:{local_port}: {e}"
            ) from e

        self.active_tunnels[tunnel.id] = tunnel
        connection.add_close_callback(self._on_connection_closed)

        logger.info(
            f"Tunnel created: {local_host}:{tunnel.local_port} -> "
            f"{remote_host}:{remote_port} via {connection.key}"
        )
        payload = {"local_port": tunnel.local_port, "remote_host": remote_host, "remote_port": remote_port}
        self._emit(EventType.SSH_TUNNEL_CREATED, payload)
        self._emit(EventType.TUNNEL_CREATED, payload)
        return tunnel

    async def close_all(self) -> None:
        """Close every active tunnel, logging individual failures"""
        for tunnel in list(self.active_tunnels.values()):
            try:
                await tunnel.close()
            except Exception as e:
                logger.warning(f"Failed to close tunnel {tunnel.id}: {e}")
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _forget(self, tunnel: Tunnel) -> None:
        if self.active_tunnels.get(tunnel.id) is tunnel:
            del self.active_tunnels[tunnel.id]
        if not any(t.connection is tunnel.connection for t in self.active_tunnels.values()):
            tunnel.connection.remove_close_callback(self._on_connection_closed)

    def _on_connection_closed(self, connection: PooledConnection) -> None:
        for tunnel in list(self.active_tunnels.values()):
            if tunnel.connection is connection:
                logger.warning(f"SSH connection {connection.key} dropped, closing tunnel {tunnel.id}")
                tunnel._connection_lost = True
                self._schedule_close(tunnel)

    def _schedule_close(self, tunnel: Tunnel) -> None:
        if tunnel._closed:
            return
        task = asyncio.get_running_loop().create_task(tunnel.close())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _emit_closed(self, tunnel: Tunnel) -> None:
        payload = {"local_port": tunnel.local_port}
        self._emit(EventType.SSH_TUNNEL_CLOSED, payload)
        self._emit(EventType.TUNNEL_CLOSED, payload)

    def _emit(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.emit(event_type, data, source=self.adapter)
