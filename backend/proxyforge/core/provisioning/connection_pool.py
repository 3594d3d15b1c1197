"""
Connection Pool - Pooled SSH sessions per host.

Hands out exclusive leases on authenticated sessions and reaps idle ones.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog

from proxyforge.core.config import settings
from proxyforge.core.exceptions import PoolExhausted, TransportError
from proxyforge.core.provisioning.transport import RemoteSession, RemoteTransport, SSHCredentials

logger = structlog.get_logger()


def make_host_key(host: str, port: int = 22) -> str:
    return f"{host}:{port}"


@dataclass(eq=False)
class PoolEntry:
    """A pooled session. Owned by the pool unless ``in_use`` is set."""
    host_key: str
    id: str = field(default_factory=lambda: uuid4().hex[:8])
    session: Optional[RemoteSession] = None
    in_use: bool = True
    connecting: bool = False
    last_used: float = field(default_factory=time.monotonic)
    last_used_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self) -> None:
        self.last_used = time.monotonic()
        self.last_used_at = datetime.now(timezone.utc)


class ConnectionPool:
    """
    Bounded pool of remote sessions keyed by ``host:port``.

    Features:
    - At most ``max_per_host`` sessions per host (including ones still connecting)
    - Transient connect failures retried with a fixed delay
    - Callers block (polling) while a host is at capacity
    - Background reaper closes sessions idle longer than ``idle_ttl``
    """

    def __init__(
        self,
        transport: RemoteTransport,
        max_per_host: int = settings.POOL_MAX_PER_HOST,
        max_retries: int = settings.POOL_MAX_RETRIES,
        retry_delay: float = settings.POOL_RETRY_DELAY,
        wait_timeout: float = settings.POOL_WAIT_TIMEOUT,
        poll_interval: float = settings.POOL_POLL_INTERVAL,
        idle_ttl: float = settings.POOL_IDLE_TTL,
        reap_interval: float = settings.POOL_REAP_INTERVAL,
    ):
        self.transport = transport
        self.max_per_host = max_per_host
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self.idle_ttl = idle_ttl
        self.reap_interval = reap_interval

        self._pool: dict[str, list[PoolEntry]] = {}
        self._lock = asyncio.Lock()

        self._reaper_task: Optional[asyncio.Task] = None
        self._reaper_running = False

    # ======================================================================
    # Leasing
    # ======================================================================

    async def acquire(
        self,
        host: str,
        port: int,
        credentials: SSHCredentials,
    ) -> PoolEntry:
        """
        Lease a session for ``host:port``.

        Args:
            host: Target host
            port: SSH port
            credentials: Login used if a new session must be opened

        Returns:
            Leased pool entry; pass it back to ``release`` or ``discard``

        Raises:
            TransportError: If a new session could not be established
            PoolExhausted: If the host stayed at capacity for ``wait_timeout``
        """
        host_key = make_host_key(host, port)
        deadline = time.monotonic() + self.wait_timeout

        while True:
            async with self._lock:
                entries = self._pool.setdefault(host_key, [])

                idle = next((e for e in entries if not e.in_use and not e.connecting), None)
                if idle:
                    idle.in_use = True
                    idle.touch()
                    logger.debug("Reusing pooled session", host=host_key, entry=idle.id)
                    return idle

                reserved = None
                if len(entries) < self.max_per_host:
                    # Reserve the slot so concurrent callers respect the cap
                    reserved = PoolEntry(host_key=host_key, connecting=True)
                    entries.append(reserved)

            if reserved:
                return await self._establish(reserved, host, port, credentials)

            if time.monotonic() >= deadline:
                raise PoolExhausted(
                    f"No session available for {host_key} within {self.wait_timeout:g}s"
                )
            await asyncio.sleep(self.poll_interval)

    async def _establish(
        self,
        entry: PoolEntry,
        host: str,
        port: int,
        credentials: SSHCredentials,
    ) -> PoolEntry:
        """Open the session for a reserved entry, retrying transient failures."""
        last_error: Optional[TransportError] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                session = await self.transport.connect(host, port, credentials)
            except TransportError as e:
                last_error = e
                logger.warning(
                    "Connection attempt failed",
                    host=entry.host_key,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    error=str(e),
                )
                if not e.transient or attempt == self.max_retries:
                    break
                await asyncio.sleep(self.retry_delay)
                continue
            except BaseException:
                await self._remove(entry)
                raise

            async with self._lock:
                entry.session = session
                entry.connecting = False
                entry.touch()
            logger.info("Pooled session created", host=entry.host_key, entry=entry.id)
            return entry

        await self._remove(entry)
        raise last_error or TransportError(f"Failed to connect to {entry.host_key}")

    async def release(self, entry: PoolEntry) -> None:
        """Return a leased entry to the pool. Releasing twice is a no-op."""
        async with self._lock:
            if not entry.in_use or entry not in self._pool.get(entry.host_key, []):
                return
            entry.in_use = False
            entry.touch()
        logger.debug("Session released", host=entry.host_key, entry=entry.id)

    async def discard(self, entry: PoolEntry) -> None:
        """Close and forget an entry whose session is no longer usable."""
        removed = await self._remove(entry)
        if removed and entry.session:
            await self._close_session(entry)
            logger.info("Pooled session discarded", host=entry.host_key, entry=entry.id)

    async def _remove(self, entry: PoolEntry) -> bool:
        async with self._lock:
            entries = self._pool.get(entry.host_key)
            if not entries or entry not in entries:
                return False
            entries.remove(entry)
            entry.in_use = False
            if not entries:
                del self._pool[entry.host_key]
            return True

    # ======================================================================
    # Idle Reaper
    # ======================================================================

    async def reap_idle(self, now: Optional[float] = None) -> int:
        """
        Close sessions idle longer than ``idle_ttl``.

        Args:
            now: Monotonic timestamp to compare against (defaults to now)

        Returns:
            Number of sessions closed
        """
        now = time.monotonic() if now is None else now
        stale: list[PoolEntry] = []

        async with self._lock:
            for host_key in list(self._pool):
                keep = []
                for entry in self._pool[host_key]:
                    if not entry.in_use and not entry.connecting and now - entry.last_used > self.idle_ttl:
                        stale.append(entry)
                    else:
                        keep.append(entry)
                if keep:
                    self._pool[host_key] = keep
                else:
                    del self._pool[host_key]

        for entry in stale:
            await self._close_session(entry)

        if stale:
            logger.info("Reaped idle sessions", count=len(stale))
        return len(stale)

    async def start_reaper(self) -> None:
        """Start the idle reaper task."""
        if self._reaper_running:
            return

        self._reaper_running = True
        self._reaper_task = asyncio.create_task(self._reaper_loop())
        logger.info("Pool reaper started", interval=self.reap_interval, idle_ttl=self.idle_ttl)

    async def stop_reaper(self) -> None:
        """Stop the idle reaper task."""
        self._reaper_running = False
        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None
        logger.info("Pool reaper stopped")

    async def _reaper_loop(self) -> None:
        while self._reaper_running:
            await asyncio.sleep(self.reap_interval)
            try:
                await self.reap_idle()
            except Exception as e:
                logger.error("Reaper error", error=str(e))

    # ======================================================================
    # Introspection & Shutdown
    # ======================================================================

    async def get_status(self) -> dict:
        """
        Get per-host pool statistics.

        Returns:
            Dict mapping host key to total/in_use/idle counts
        """
        async with self._lock:
            return {
                host_key: {
                    "total": len(entries),
                    "in_use": sum(1 for e in entries if e.in_use),
                    "idle": sum(1 for e in entries if not e.in_use and not e.connecting),
                    "max_per_host": self.max_per_host,
                }
                for host_key, entries in self._pool.items()
            }

    def in_use_count(self, host: str, port: int = 22) -> int:
        return sum(1 for e in self._pool.get(make_host_key(host, port), []) if e.in_use)

    async def close_all(self) -> None:
        """Close every pooled session, leased or not."""
        async with self._lock:
            entries = [e for bucket in self._pool.values() for e in bucket]
            self._pool.clear()

        for entry in entries:
            entry.in_use = False
            await self._close_session(entry)

        logger.info("Connection pool closed", sessions=len(entries))

    async def _close_session(self, entry: PoolEntry) -> None:
        if not entry.session:
            return
        try:
            await entry.session.close()
        except Exception as e:
            logger.warning("Error closing session", host=entry.host_key, error=str(e))
