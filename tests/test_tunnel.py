import asyncio

import pytest

from xec_engine.errors import TunnelError
from xec_engine.events import EventType
from xec_engine.tunnel import TunnelManager


@pytest.fixture
def manager(pool, events):
    return TunnelManager(pool, events)


async def roundtrip(port, payload=b"ping"):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(payload)
        await writer.drain()
        return await asyncio.wait_for(reader.readexactly(len(payload)), 2.0)
    finally:
        writer.close()


async def connect(pool, options):
    conn = await pool.acquire(options)
    pool.release(conn)


async def assert_refused(port):
    with pytest.raises(OSError):
        _, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.close()


class TestTunnelOpen:
    @pytest.mark.asyncio
    async def test_no_connection_fails_fast(self, manager, connector):
        with pytest.raises(TunnelError) as exc_info:
            await manager.open(None, "db.internal", 5432)

        assert "No SSH connection available" in str(exc_info.value)
        assert connector.calls == 0

    @pytest.mark.asyncio
    async def test_explicit_options_never_connect(self, manager, connector, pool, ssh_options):
        with pytest.raises(TunnelError) as exc_info:
            await manager.open(ssh_options, "db.internal", 5432)

        assert ssh_options.pool_key in str(exc_info.value)
        assert connector.calls == 0
        assert pool.size == 0
        assert manager.active_tunnels == {}

    @pytest.mark.asyncio
    async def test_ephemeral_port_and_forwarding(self, manager, connector, pool, ssh_options):
        await connect(pool, ssh_options)
        tunnel = await manager.open(ssh_options, "db.internal", 5432)

        assert tunnel.local_port > 0
        assert tunnel.is_open
        assert tunnel.id == f"127.0.0.1:{tunnel.local_port}-db.internal:5432"
        assert manager.active_tunnels == {tunnel.id: tunnel}

        assert await roundtrip(tunnel.local_port) == b"ping"
        assert connector.sessions[0].channels[0].sent == [b"ping"]

        await tunnel.close()

    @pytest.mark.asyncio
    async def test_created_events_fire_before_open_returns(self, manager, events, pool, ssh_options):
        await connect(pool, ssh_options)
        seen = []
        events.on(EventType.SSH_TUNNEL_CREATED, lambda e: seen.append(e.data))
        events.on(EventType.TUNNEL_CREATED, lambda e: seen.append(e.data))

        tunnel = await manager.open(ssh_options, "db.internal", 5432)

        expected = {"local_port": tunnel.local_port, "remote_host": "db.internal", "remote_port": 5432}
        assert seen == [expected, expected]
        await tunnel.close()

    @pytest.mark.asyncio
    async def test_concurrent_tunnels_share_the_connection(self, manager, connector, pool, ssh_options):
        await connect(pool, ssh_options)
        first, second = await asyncio.gather(
            manager.open(ssh_options, "db.internal", 5432),
            manager.open(ssh_options, "cache.internal", 6379),
        )

        assert connector.calls == 1
        assert first.connection is second.connection
        assert first.connection.ref_count == 2
        assert len(manager.active_tunnels) == 2
        assert await roundtrip(first.local_port, b"a") == b"a"
        assert await roundtrip(second.local_port, b"b") == b"b"

        await manager.close_all()

    @pytest.mark.asyncio
    async def test_listen_failure_releases_connection(self, manager, pool, ssh_options):
        await connect(pool, ssh_options)
        taken = await manager.open(ssh_options, "db.internal", 5432)

        with pytest.raises(TunnelError):
            await manager.open(ssh_options, "cache.internal", 6379, local_port=taken.local_port)

        assert taken.connection.ref_count == 1
        assert len(manager.active_tunnels) == 1
        await taken.close()


class TestTunnelClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, manager, events, pool, ssh_options):
        await connect(pool, ssh_options)
        closed = []
        events.on(EventType.TUNNEL_CLOSED, lambda e: closed.append(e.data))
        tunnel = await manager.open(ssh_options, "db.internal", 5432)
        port = tunnel.local_port

        await tunnel.close()
        await tunnel.close()

        assert not tunnel.is_open
        assert manager.active_tunnels == {}
        assert closed == [{"local_port": port}]
        assert tunnel.connection.ref_count == 0
        await assert_refused(port)

    @pytest.mark.asyncio
    async def test_close_all_closes_every_listener(self, manager, pool, ssh_options):
        await connect(pool, ssh_options)
        tunnels = [
            await manager.open(ssh_options, "db.internal", 5432),
            await manager.open(ssh_options, "cache.internal", 6379),
        ]
        ports = [t.local_port for t in tunnels]

        await manager.close_all()

        assert manager.active_tunnels == {}
        for port in ports:
            await assert_refused(port)

    @pytest.mark.asyncio
    async def test_close_all_continues_past_failures(self, manager, pool, ssh_options):
        await connect(pool, ssh_options)
        broken = await manager.open(ssh_options, "db.internal", 5432)
        healthy = await manager.open(ssh_options, "cache.internal", 6379)

        async def fail():
            raise RuntimeError("boom")

        broken.close = fail

        await manager.close_all()

        assert not healthy.is_open
        assert list(manager.active_tunnels) == [broken.id]

        del broken.close
        await broken.close()

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self, manager, pool, ssh_options):
        await connect(pool, ssh_options)
        async with await manager.open(ssh_options, "db.internal", 5432) as tunnel:
            assert tunnel.is_open

        assert not tunnel.is_open

    @pytest.mark.asyncio
    async def test_dropped_connection_closes_tunnel(self, manager, pool, ssh_options):
        await connect(pool, ssh_options)
        tunnel = await manager.open(ssh_options, "db.internal", 5432)
        port = tunnel.local_port

        await pool.dispose()

        assert not tunnel.is_open
        await manager.close_all()
        assert manager.active_tunnels == {}
        await assert_refused(port)
