"""Tests for the per-identity connection pool."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from annolaunch.errors import TransportError
from annolaunch.models import Identity
from annolaunch.ssh.client import SSHClient
from annolaunch.ssh.pool import ConnectionPool


class _FakeClient:
    """Stands in for SSHClient; counts connects and closes."""

    def __init__(self, identity: Identity, fail: bool = False, delay: float = 0.0) -> None:
        self.identity = identity
        self.fail = fail
        self.delay = delay
        self.connected = False
        self.connect_calls = 0
        self.close_calls = 0
        self.busy = False
        self.on_idle = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TransportError("connection refused")
        self.connected = True

    def close(self) -> None:
        self.close_calls += 1
        self.connected = False


def _make_pool(ttl: float = 60.0, **client_kwargs) -> tuple[ConnectionPool, list[_FakeClient]]:
    created: list[_FakeClient] = []

    def factory(identity: Identity) -> _FakeClient:
        client = _FakeClient(identity, **client_kwargs)
        created.append(client)
        return client

    return ConnectionPool("cluster.example.org", ttl=ttl, client_factory=factory), created


ALICE = Identity(username="alice", private_key="KEY")
BOB = Identity(username="bob", private_key="KEY")


class TestAcquire:

    @pytest.mark.asyncio
    async def test_cache_hit_reuses_client(self):
        pool, created = _make_pool()

        first = await pool.acquire(ALICE)
        second = await pool.acquire(ALICE)

        assert first is second
        assert len(created) == 1
        assert created[0].connect_calls == 1
        pool.clear()

    @pytest.mark.asyncio
    async def test_identities_are_separate(self):
        pool, created = _make_pool()

        a = await pool.acquire(ALICE)
        b = await pool.acquire(BOB)

        assert a is not b
        assert len(pool) == 2
        assert ALICE in pool and BOB in pool
        pool.clear()

    @pytest.mark.asyncio
    async def test_concurrent_acquire_opens_one_connection(self):
        pool, created = _make_pool(delay=0.02)

        clients = await asyncio.gather(*(pool.acquire(ALICE) for _ in range(5)))

        assert len(created) == 1
        assert all(c is clients[0] for c in clients)
        pool.clear()

    @pytest.mark.asyncio
    async def test_dropped_connection_replaced(self):
        pool, created = _make_pool()

        first = await pool.acquire(ALICE)
        first.connected = False
        second = await pool.acquire(ALICE)

        assert second is not first
        assert first.close_calls == 1
        assert len(created) == 2
        pool.clear()

    @pytest.mark.asyncio
    async def test_failed_connect_not_cached(self):
        pool, created = _make_pool(fail=True)

        with pytest.raises(TransportError):
            await pool.acquire(ALICE)

        assert len(pool) == 0
        assert ALICE not in pool


class TestExpiry:

    @pytest.mark.asyncio
    async def test_idle_connection_expires(self):
        pool, created = _make_pool(ttl=0.05)

        await pool.acquire(ALICE)
        await asyncio.sleep(0.15)

        assert ALICE not in pool
        assert created[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_acquire_slides_expiry(self):
        pool, created = _make_pool(ttl=0.1)

        await pool.acquire(ALICE)
        for _ in range(4):
            await asyncio.sleep(0.05)
            await pool.acquire(ALICE)

        assert ALICE in pool
        assert len(created) == 1
        assert created[0].close_calls == 0
        pool.clear()

    @pytest.mark.asyncio
    async def test_stale_timer_ignores_replacement(self):
        pool, created = _make_pool(ttl=0.05)

        first = await pool.acquire(ALICE)
        pool.evict(ALICE)
        second = await pool.acquire(ALICE)
        await asyncio.sleep(0.02)

        assert ALICE in pool
        assert second.close_calls == 0
        assert first.close_calls == 1
        pool.clear()


class TestEvictAndClear:

    @pytest.mark.asyncio
    async def test_evict(self):
        pool, created = _make_pool()

        await pool.acquire(ALICE)

        assert pool.evict(ALICE) is True
        assert created[0].close_calls == 1
        assert pool.evict(ALICE) is False

    @pytest.mark.asyncio
    async def test_evict_by_username_only(self):
        pool, created = _make_pool()

        await pool.acquire(ALICE)

        assert pool.evict(Identity(username="alice")) is True

    @pytest.mark.asyncio
    async def test_clear_closes_everything(self):
        pool, created = _make_pool()

        await pool.acquire(ALICE)
        await pool.acquire(BOB)
        pool.clear()

        assert len(pool) == 0
        assert all(c.close_calls == 1 for c in created)

    @pytest.mark.asyncio
    async def test_no_close_after_clear(self):
        pool, created = _make_pool(ttl=0.05)

        await pool.acquire(ALICE)
        pool.clear()
        await asyncio.sleep(0.1)

        assert created[0].close_calls == 1


def _make_slow_connection(delay: float) -> MagicMock:
    async def slow_run(command, input=None, check=False):
        await asyncio.sleep(delay)
        return MagicMock(stdout="done\n", stderr="", exit_status=0)

    conn = MagicMock()
    conn.is_closed.return_value = False
    conn.run = AsyncMock(side_effect=slow_run)
    return conn


def _make_ssh_pool(conn: MagicMock, ttl: float) -> ConnectionPool:
    def factory(identity: Identity) -> SSHClient:
        client = SSHClient(host="cluster.example.org", identity=identity)
        client._connection = conn
        return client

    return ConnectionPool("cluster.example.org", ttl=ttl, client_factory=factory)


class TestBorrowedConnections:

    @pytest.mark.asyncio
    async def test_command_longer_than_ttl(self):
        conn = _make_slow_connection(0.3)
        pool = _make_ssh_pool(conn, ttl=0.1)

        client = await pool.acquire(ALICE)
        result = await client.run_command(["cat", "/data/alice/big.log"])

        assert result.stdout == "done\n"
        assert ALICE in pool
        conn.close.assert_not_called()

        await asyncio.sleep(0.25)

        assert ALICE not in pool
        conn.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_queued_commands_keep_connection(self):
        conn = _make_slow_connection(0.08)
        pool = _make_ssh_pool(conn, ttl=0.1)

        client = await pool.acquire(ALICE)
        results = await asyncio.gather(*(client.run_command(["true"]) for _ in range(3)))

        assert [r.stdout for r in results] == ["done\n"] * 3
        assert ALICE in pool
        conn.close.assert_not_called()
        pool.clear()

    @pytest.mark.asyncio
    async def test_idle_after_command_restarts_timer(self):
        conn = _make_slow_connection(0.0)
        pool = _make_ssh_pool(conn, ttl=0.15)

        client = await pool.acquire(ALICE)
        await asyncio.sleep(0.1)
        await client.run_command(["true"])
        await asyncio.sleep(0.1)

        assert ALICE in pool
        pool.clear()
