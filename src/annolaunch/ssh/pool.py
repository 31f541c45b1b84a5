"""Per-identity connection cache with sliding expiry."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from annolaunch.models import Identity
from annolaunch.ssh.client import SSHClient

logger = logging.getLogger(__name__)

PoolKey = tuple[str, str]


@dataclass
class _Entry:
    client: SSHClient
    timer: asyncio.TimerHandle | None = None


class ConnectionPool:
    """Owns one live SSH connection per (host, username).

    ``acquire`` reuses the cached connection and restarts its TTL timer,
    and the timer restarts again when the last command on the connection
    finishes. A connection with a command running or queued is never
    expired. Construct it once
    at startup and call :meth:`clear` on shutdown.
    """

    def __init__(
        self,
        host: str,
        ttl: float = 300.0,
        client_factory: Callable[[Identity], SSHClient] | None = None,
        **client_options: Any,
    ) -> None:
        self.host = host
        self.ttl = ttl
        self._client_options = client_options
        self._client_factory = client_factory or self._default_factory
        self._entries: dict[PoolKey, _Entry] = {}
        self._locks: dict[PoolKey, asyncio.Lock] = {}

    def _default_factory(self, identity: Identity) -> SSHClient:
        return SSHClient(host=self.host, identity=identity, **self._client_options)

    def key_for(self, identity: Identity) -> PoolKey:
        return (self.host, identity.username)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        return isinstance(identity, Identity) and self.key_for(identity) in self._entries

    def _arm_timer(self, key: PoolKey, entry: _Entry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(self.ttl, self._expire, key, entry)

    def _expire(self, key: PoolKey, entry: _Entry) -> None:
        # The entry may have been replaced since this timer was armed.
        if self._entries.get(key) is not entry:
            return
        if entry.client.busy:
            # Re-armed by on_idle once the borrower is done
            entry.timer = None
            return
        del self._entries[key]
        entry.client.close()
        logger.info(f"Connection for {key[1]}@{key[0]} expired after {self.ttl}s idle")

    def _touch(self, key: PoolKey, entry: _Entry) -> None:
        if self._entries.get(key) is entry:
            self._arm_timer(key, entry)

    async def acquire(self, identity: Identity) -> SSHClient:
        """Return the live connection for an identity, opening one if needed."""
        key = self.key_for(identity)
        lock = self._locks.setdefault(key, asyncio.Lock())

        async with lock:
            entry = self._entries.get(key)
            if entry is not None:
                if entry.client.is_connected:
                    self._arm_timer(key, entry)
                    return entry.client
                logger.info(f"Cached connection for {identity.username} dropped, reconnecting")
                self._discard(key)

            client = self._client_factory(identity)
            await client.connect()
            entry = _Entry(client=client)
            self._entries[key] = entry
            client.on_idle = lambda: self._touch(key, entry)
            self._arm_timer(key, entry)
            logger.debug(f"Pooled new connection for {identity.username} ({len(self)} open)")
            return client

    def _discard(self, key: PoolKey) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        entry.client.close()
        return True

    def evict(self, identity: Identity) -> bool:
        """Close and forget the connection for an identity."""
        removed = self._discard(self.key_for(identity))
        if removed:
            logger.info(f"Evicted connection for {identity.username}")
        return removed

    def clear(self) -> None:
        """Close every pooled connection."""
        for key in list(self._entries):
            self._discard(key)
        self._locks.clear()
        logger.info("Connection pool cleared")
