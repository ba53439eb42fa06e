"""
SSH Connection Pool - Reference-Counted Connection Reuse
=========================================================

Keeps one live SSH session per identity (``username@host:port``) and
shares it between concurrent commands and tunnels.

Features:
- Reference counting: a connection is never closed while borrowed
- Idle eviction timers, started when the last borrower releases
- Pool-wide max_connections (evict least-recently-used idle entry, else queue),
  lowered per target by ConnectionPoolOptions.max_connections
- Per-key connect serialization so concurrent acquires share one connect
- Maximum lifetime and dead-connection replacement
- Close callbacks for dependants such as tunnels
- Metrics
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Callable, Awaitable, Set

from .command import SSHOptions
from .config import PoolConfig
from .errors import PoolExhaustedError
from .events import EventEmitter, EventType

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle of a pooled connection once connected"""
    READY = "ready"
    RETIRED = "retired"
    CLOSED = "closed"


@dataclass(eq=False)
class PooledConnection:
    """A live SSH session plus its bookkeeping"""
    key: str
    client: Any
    options: SSHOptions
    created_at: float
    last_used_at: float
    ref_count: int = 0
    use_count: int = 0
    errors: int = 0
    state: ConnectionState = ConnectionState.READY
    discard_on_release: bool = False
    idle_handle: Optional[asyncio.TimerHandle] = None
    close_callbacks: List[Callable[["PooledConnection"], None]] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.state is not ConnectionState.CLOSED

    def add_close_callback(self, callback: Callable[["PooledConnection"], None]) -> None:
        self.close_callbacks.append(callback)

    def remove_close_callback(self, callback: Callable[["PooledConnection"], None]) -> None:
        if callback in self.close_callbacks:
            self.close_callbacks.remove(callback)

    def cancel_idle_timer(self) -> None:
        if self.idle_handle is not None:
            self.idle_handle.cancel()
            self.idle_handle = None


@dataclass
class PoolMetrics:
    created: int = 0
    reused: int = 0
    destroyed: int = 0
    failed: int = 0
    evicted: int = 0
    active: int = 0
    idle: int = 0
    size: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "reused": self.reused,
            "destroyed": self.destroyed,
            "failed": self.failed,
            "evicted": self.evicted,
            "active": self.active,
            "idle": self.idle,
            "size": self.size,
        }


Connect = Callable[[SSHOptions], Awaitable[Any]]


class ConnectionPool:
    """
    Reference-counted pool of SSH sessions.

    ``connect`` turns SSHOptions into a client object exposing ``is_alive()``
    and a blocking ``close()`` (see ssh_client.SSHConnector).

    When max_connections is reached, acquire() evicts the least recently
    released idle connection; if every connection is borrowed it waits for a
    slot, up to acquire_timeout seconds (forever when None).

    Usage:
        pool = ConnectionPool(connect=SSHConnector())
        conn = await pool.acquire(options)
        try:
            conn.client.exec_command("uptime")
        finally:
            pool.release(conn)
    """

    def __init__(
        self,
        connect: Connect,
        max_connections: int = 10,
        idle_timeout: float = 300.0,
        max_lifetime: Optional[float] = 3600.0,
        acquire_timeout: Optional[float] = None,
        events: Optional[EventEmitter] = None,
    ):
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")

        self._connect = connect
        self.max_connections = max_connections
        self.idle_timeout = idle_timeout
        self.max_lifetime = max_lifetime
        self.acquire_timeout = acquire_timeout
        self.events = events

        self._connections: Dict[str, PooledConnection] = {}
        self._retired: Set[PooledConnection] = set()
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._closing: Set[asyncio.Task] = set()
        self._slot_freed = asyncio.Event()
        self._pending = 0
        self._closed = False
        self._metrics = PoolMetrics()

    @classmethod
    def from_config(cls, config: PoolConfig, connect: Connect, events: Optional[EventEmitter] = None) -> "ConnectionPool":
        return cls(
            connect=connect,
            max_connections=config.max_connections,
            idle_timeout=config.idle_timeout,
            max_lifetime=config.max_lifetime,
            acquire_timeout=config.acquire_timeout,
            events=events,
        )

    # =========================================================
    # ACQUIRE / RELEASE
    # =========================================================

    async def acquire(self, options: SSHOptions) -> PooledConnection:
        """Borrow the connection for these options, connecting if needed"""
        host = options.host or ""
        if self._closed:
            raise PoolExhaustedError(host, "connection pool is disposed")

        key = options.pool_key
        lock = self._key_locks.setdefault(key, asyncio.Lock())

        async with lock:
            conn = self._connections.get(key)
            if conn is not None:
                if self._is_usable(conn):
                    self._checkout(conn, options)
                    self._metrics.reused += 1
                    logger.debug(f"Reusing pooled SSH connection {key} (refs={conn.ref_count})")
                    return conn
                logger.info(f"Replacing stale SSH connection {key}")
                self._retire(conn, "stale")

            await self._reserve_slot(host, self._limit_for(options))
            try:
                client = await self._connect(options)
            except BaseException:
                self._pending -= 1
                self._slot_freed.set()
                self._metrics.failed += 1
                raise
            self._pending -= 1

            loop = asyncio.get_running_loop()
            conn = PooledConnection(
                key=key,
                client=client,
                options=options,
                created_at=loop.time(),
                last_used_at=loop.time(),
            )
            if self._closed:
                self._schedule_close(conn, "disposed")
                raise PoolExhaustedError(host, "connection pool was disposed while connecting")

            self._connections[key] = conn
            self._metrics.created += 1
            self._checkout(conn, options)

        logger.info(f"Pooled new SSH connection {key} ({len(self._connections)}/{self.max_connections})")
        self._emit(EventType.SSH_CONNECT, {
            "host": options.host,
            "port": options.port,
            "username": options.username,
            "key": key,
        })
        return conn

    def release(self, conn: PooledConnection, discard: bool = False) -> None:
        """
        Return a borrowed connection.

        Extra releases are ignored. With discard=True (or pooling disabled for
        the connection) it is closed once the last borrower lets go.
        """
        if conn.ref_count <= 0:
            logger.warning(f"Ignoring release of {conn.key} without a matching acquire")
            return

        conn.ref_count -= 1
        conn.last_used_at = asyncio.get_running_loop().time()
        if conn.ref_count > 0:
            return

        if conn.state is ConnectionState.CLOSED:
            return
        if discard or conn.discard_on_release or conn.state is ConnectionState.RETIRED:
            self._retire(conn, "released")
            return

        self._start_idle_timer(conn)
        self._slot_freed.set()

    def invalidate(self, conn: PooledConnection) -> None:
        """Stop handing out this connection; it closes when no longer borrowed"""
        if conn.state is ConnectionState.READY:
            self._retire(conn, "invalidated")

    def _checkout(self, conn: PooledConnection, options: SSHOptions) -> None:
        conn.cancel_idle_timer()
        conn.ref_count += 1
        conn.use_count += 1
        conn.last_used_at = asyncio.get_running_loop().time()
        if not options.pooling_enabled:
            conn.discard_on_release = True

    def _is_usable(self, conn: PooledConnection) -> bool:
        if conn.state is not ConnectionState.READY:
            return False
        if self.max_lifetime is not None:
            age = asyncio.get_running_loop().time() - conn.created_at
            if age >= self.max_lifetime:
                return False
        try:
            return bool(conn.client.is_alive())
        except Exception as e:
            logger.warning(f"Liveness check failed for {conn.key}: {e}")
            return False

    # =========================================================
    # SLOTS AND EVICTION
    # =========================================================

    def _limit_for(self, options: SSHOptions) -> int:
        overrides = options.connection_pool
        if overrides is not None and overrides.max_connections is not None:
            return min(self.max_connections, overrides.max_connections)
        return self.max_connections

    async def _reserve_slot(self, host: str, limit: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = None if self.acquire_timeout is None else loop.time() + self.acquire_timeout

        while len(self._connections) + self._pending >= limit:
            if self._closed:
                raise PoolExhaustedError(host, "connection pool is disposed")

            victim = self._least_recently_used_idle()
            if victim is not None:
                logger.info(f"Pool full ({limit}), evicting idle connection {victim.key}")
                self._metrics.evicted += 1
                self._schedule_close(victim, "evicted")
                continue

            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise PoolExhaustedError(host, f"no free connection slot within {self.acquire_timeout}s")

            self._slot_freed.clear()
            try:
                await asyncio.wait_for(self._slot_freed.wait(), remaining)
            except asyncio.TimeoutError:
                raise PoolExhaustedError(
                    host, f"no free connection slot within {self.acquire_timeout}s"
                ) from None

        if self._closed:
            raise PoolExhaustedError(host, "connection pool is disposed")
        self._pending += 1

    def _least_recently_used_idle(self) -> Optional[PooledConnection]:
        idle = [
            c for c in self._connections.values()
            if c.ref_count == 0 and c.state is ConnectionState.READY
        ]
        if not idle:
            return None
        return min(idle, key=lambda c: c.last_used_at)

    def _idle_timeout_for(self, conn: PooledConnection) -> float:
        overrides = conn.options.connection_pool
        if overrides is not None and overrides.idle_timeout is not None:
            return overrides.idle_timeout
        return self.idle_timeout

    def _start_idle_timer(self, conn: PooledConnection) -> None:
        conn.cancel_idle_timer()
        loop = asyncio.get_running_loop()
        conn.idle_handle = loop.call_later(self._idle_timeout_for(conn), self._on_idle_timeout, conn)

    def _on_idle_timeout(self, conn: PooledConnection) -> None:
        conn.idle_handle = None
        if conn.ref_count == 0 and conn.state is ConnectionState.READY:
            logger.info(f"Closing idle SSH connection {conn.key}")
            self._schedule_close(conn, "idle")

    # =========================================================
    # CLOSING
    # =========================================================

    def _retire(self, conn: PooledConnection, reason: str) -> None:
        if self._connections.get(conn.key) is conn:
            del self._connections[conn.key]
            self._slot_freed.set()
        conn.cancel_idle_timer()

        if conn.ref_count == 0:
            self._schedule_close(conn, reason)
        else:
            conn.state = ConnectionState.RETIRED
            self._retired.add(conn)

    def _schedule_close(self, conn: PooledConnection, reason: str) -> None:
        if conn.state is ConnectionState.CLOSED:
            return

        conn.state = ConnectionState.CLOSED
        conn.cancel_idle_timer()
        self._retired.discard(conn)
        if self._connections.get(conn.key) is conn:
            del self._connections[conn.key]
        self._slot_freed.set()

        task = asyncio.get_running_loop().create_task(self._close(conn, reason))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close(self, conn: PooledConnection, reason: str) -> None:
        for callback in list(conn.close_callbacks):
            try:
                callback(conn)
            except Exception as e:
                logger.warning(f"Close callback failed for {conn.key}: {e}")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, conn.client.close)
        except Exception as e:
            logger.warning(f"Error closing SSH connection {conn.key}: {e}")

        self._metrics.destroyed += 1
        logger.info(f"SSH connection closed: {conn.key} ({reason})")
        self._emit(EventType.SSH_DISCONNECT, {"key": conn.key, "host": conn.options.host, "reason": reason})

    async def dispose(self) -> None:
        """Close every connection regardless of borrowers and cancel all timers"""
        self._closed = True
        for conn in list(self._connections.values()) + list(self._retired):
            self._schedule_close(conn, "disposed")
        self._slot_freed.set()

        pending = list(self._closing)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._key_locks.clear()
        logger.info("SSH connection pool disposed")

    # =========================================================
    # INTROSPECTION
    # =========================================================

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def size(self) -> int:
        return len(self._connections)

    def get(self, key: str) -> Optional[PooledConnection]:
        return self._connections.get(key)

    def has_connection(self, options: SSHOptions) -> bool:
        conn = self._connections.get(options.pool_key)
        return conn is not None and conn.state is ConnectionState.READY

    def metrics(self) -> PoolMetrics:
        conns = list(self._connections.values())
        self._metrics.active = sum(1 for c in conns if c.ref_count > 0)
        self._metrics.idle = sum(1 for c in conns if c.ref_count == 0)
        self._metrics.size = len(conns)
        return PoolMetrics(**self._metrics.to_dict())

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = self.metrics().to_dict()
        stats["max_connections"] = self.max_connections
        stats["connections"] = [
            {"key": c.key, "ref_count": c.ref_count, "use_count": c.use_count, "errors": c.errors}
            for c in self._connections.values()
        ]
        return stats

    def _emit(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.emit(event_type, data, source="ssh")
