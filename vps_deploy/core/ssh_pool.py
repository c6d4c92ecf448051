"""SSH connection pool manager for deployment sessions.

The pool keeps at most one live session per host and bounds the number of
sessions across all hosts. Callers waiting for a busy host queue on that
host's slot; callers waiting for capacity queue on a single pool-wide queue.
Both queues are FIFO and ownership is handed directly to the next waiter.
"""

import asyncio
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncGenerator, Callable, Optional

import structlog

from ..models.deployment import CommandResult
from ..models.enums import SessionState
from ..models.host import Host
from ..models.pool import ConnectionStatus, PoolStats, SessionMetrics
from .exceptions import (
    AcquireTimeoutError,
    AuthError,
    CapacityExceededError,
    ConnectTimeoutError,
    DisconnectedError,
    PoolClosedError,
    TransportError,
    UnreachableError,
)
from .settings import PoolSettings
from .transport import ParamikoSession, TransportFactory, TransportSession

logger = structlog.get_logger()


@dataclass(eq=False)
class PooledSession:
    """Wrapper for a pooled SSH session."""

    host: Host
    transport: TransportSession
    metrics: SessionMetrics
    state: SessionState = SessionState.IDLE
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    use_count: int = 0

    @property
    def host_id(self) -> str:
        return self.host.id

    @property
    def healthy(self) -> bool:
        return self.state in (SessionState.IDLE, SessionState.IN_USE)

    def touch(self) -> None:
        """Update last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    def idle_seconds(self) -> float:
        return (datetime.now(UTC) - self.last_activity).total_seconds()

    def _check_out(self) -> None:
        if self.state is not SessionState.IN_USE:
            raise DisconnectedError(
                f"Session for {self.host.endpoint} is {self.state.value}, not checked out"
            )

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run a command on the borrowed session, recording metrics."""
        self._check_out()
        started = time.monotonic()
        try:
            result = await self.transport.execute(command, timeout)
        except TransportError as e:
            self.metrics.record_failure(e)
            raise
        finally:
            self.touch()

        if result.succeeded:
            self.metrics.record_success(time.monotonic() - started)
        else:
            self.metrics.record_failure(f"exit status {result.exit_status}")
        return result

    async def write_file(self, remote_path: str, content: str) -> None:
        self._check_out()
        try:
            await self.transport.write_file(remote_path, content)
        finally:
            self.touch()


class _HostSlot:
    """Per-host exclusivity: the live session plus the FIFO of waiting callers."""

    __slots__ = ("session", "busy", "checked_out", "waiters")

    def __init__(self) -> None:
        self.session: PooledSession | None = None
        # Owned by an acquirer, a borrower or the health monitor.
        self.busy = False
        # Owned by a borrower that must call release() or invalidate().
        self.checked_out = False
        self.waiters: deque[asyncio.Future[None]] = deque()


def _granted(waiter: asyncio.Future[None]) -> bool:
    return waiter.done() and not waiter.cancelled() and waiter.exception() is None


class ConnectionPool:
    """Shares a bounded number of SSH sessions across many hosts."""

    def __init__(
        self,
        settings: PoolSettings | None = None,
        transport_factory: TransportFactory = ParamikoSession,
    ):
        """Initialize SSH connection pool.

        Args:
            settings: Pool, transport and timeout configuration
            transport_factory: Builds an unconnected transport session for a host
        """
        self.settings = settings or PoolSettings()
        self._transport_factory = transport_factory

        self._slots: dict[str, _HostSlot] = {}
        self._metrics: dict[str, SessionMetrics] = defaultdict(SessionMetrics)
        # Live sessions plus reservations for sessions being opened.
        self._occupied = 0
        self._capacity_waiters: deque[asyncio.Future[None]] = deque()
        self._monitor_task: Optional[asyncio.Task] = None
        self._closed = False
        self._stats = {
            "connections_created": 0,
            "connections_reused": 0,
            "connections_closed": 0,
            "connection_errors": 0,
            "health_check_failures": 0,
        }

        logger.info(
            "SSH connection pool initialized",
            max_pool_size=self.settings.max_pool_size,
            acquire_timeout=self.settings.acquire_timeout,
            health_check_interval=self.settings.health_check_interval,
        )

    @property
    def max_pool_size(self) -> int:
        return self.settings.max_pool_size

    @property
    def closed(self) -> bool:
        return self._closed

    # Acquire / release

    async def acquire(self, host: Host) -> PooledSession:
        """Borrow the session for ``host``, opening one if needed.

        Raises:
            AcquireTimeoutError: The host's session stayed busy past the timeout
            CapacityExceededError: No pool slot freed up before the timeout
            PoolClosedError: The pool was shut down
            AuthError, UnreachableError, ConnectTimeoutError: Opening failed
        """
        self._ensure_open()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.acquire_timeout

        slot = self._slots.get(host.id)
        if slot is None:
            slot = self._slots[host.id] = _HostSlot()

        if slot.busy:
            logger.debug("Waiting for busy host session", host=host.endpoint)
            granted = await self._wait_turn(
                slot.waiters, deadline - loop.time(), lambda: self._grant_slot(slot, host.id)
            )
            if not granted:
                raise AcquireTimeoutError(
                    f"Session for {host.endpoint} still busy after "
                    f"{self.settings.acquire_timeout} seconds"
                )
        else:
            slot.busy = True

        try:
            session = await self._checkout(slot, host, deadline)
        except BaseException:
            self._grant_slot(slot, host.id)
            raise
        slot.checked_out = True
        return session

    async def release(self, host_id: str) -> None:
        """Return a borrowed session to the pool as idle."""
        slot = self._slots.get(host_id)
        if slot is None or not slot.checked_out:
            logger.warning("Release of a session that is not checked out", host_id=host_id)
            return

        session = slot.session
        if session is not None and session.state is SessionState.IN_USE:
            session.state = SessionState.IDLE
            session.touch()
        await self._return_slot(slot, host_id)

    async def invalidate(self, host_id: str) -> None:
        """Close the host's session and remove it from the pool immediately."""
        slot = self._slots.get(host_id)
        if slot is None:
            return

        if slot.checked_out:
            slot.checked_out = False
            session = self._detach(slot)
            self._grant_slot(slot, host_id)
            if session is not None:
                self._free_capacity()
                logger.info("Invalidated session", host=session.host.endpoint)
                await self._close_session(session)
        elif not slot.busy and slot.session is not None:
            await self._evict_idle(slot, host_id)
        else:
            logger.debug("Session is busy, skipping invalidate", host_id=host_id)

    @asynccontextmanager
    async def session(self, host: Host) -> AsyncGenerator[PooledSession, None]:
        """Borrow a session for the duration of the block.

        The session is invalidated when the block raises a transport error and
        released otherwise.
        """
        pooled = await self.acquire(host)
        broken = False
        try:
            yield pooled
        except TransportError:
            broken = True
            raise
        finally:
            if broken:
                await self.invalidate(host.id)
            else:
                await self.release(host.id)

    # Slot and capacity bookkeeping

    async def _wait_turn(
        self,
        queue: deque[asyncio.Future[None]],
        timeout: float,
        give_back: Callable[[], None],
    ) -> bool:
        """Queue for ownership; return False when ``timeout`` elapses first."""
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        queue.append(waiter)
        try:
            await asyncio.wait({waiter}, timeout=max(timeout, 0))
        except asyncio.CancelledError:
            if _granted(waiter):
                give_back()
            else:
                waiter.cancel()
                self._discard(queue, waiter)
            raise

        if waiter.done():
            waiter.result()
            return True
        waiter.cancel()
        self._discard(queue, waiter)
        return False

    @staticmethod
    def _discard(queue: deque[asyncio.Future[None]], waiter: asyncio.Future[None]) -> None:
        try:
            queue.remove(waiter)
        except ValueError:
            pass

    def _grant_slot(self, slot: _HostSlot, host_id: str) -> None:
        """Pass host ownership to the next waiter, or mark the slot free."""
        while slot.waiters:
            waiter = slot.waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        slot.busy = False
        self._drop_if_unused(slot, host_id)

    def _drop_if_unused(self, slot: _HostSlot, host_id: str) -> None:
        if (
            slot.session is None
            and not slot.busy
            and not slot.waiters
            and self._slots.get(host_id) is slot
        ):
            del self._slots[host_id]

    def _free_capacity(self) -> None:
        """Pass one capacity unit to the earliest waiter, or give it back."""
        while self._capacity_waiters:
            waiter = self._capacity_waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._occupied -= 1

    async def _reserve_capacity(self, host: Host, deadline: float) -> None:
        if not self._capacity_waiters:
            if self._occupied < self.max_pool_size:
                self._occupied += 1
                return

            victim = self._least_recently_used_idle()
            if victim is not None:
                # The victim's capacity unit passes straight to this request.
                victim_slot = self._slots[victim.host_id]
                self._detach(victim_slot)
                self._drop_if_unused(victim_slot, victim.host_id)
                logger.info(
                    "Evicting least recently used session",
                    evicted=victim.host.endpoint,
                    requested=host.endpoint,
                )
                try:
                    await self._close_session(victim)
                except BaseException:
                    self._free_capacity()
                    raise
                return

        logger.debug("Pool at capacity, queueing", host=host.endpoint)
        loop = asyncio.get_running_loop()
        granted = await self._wait_turn(
            self._capacity_waiters, deadline - loop.time(), self._free_capacity
        )
        if not granted:
            raise CapacityExceededError(
                f"No pool capacity for {host.endpoint} within "
                f"{self.settings.acquire_timeout} seconds (max {self.max_pool_size})"
            )

    def _least_recently_used_idle(self) -> PooledSession | None:
        candidates = [
            slot.session
            for slot in self._slots.values()
            if not slot.busy and slot.session is not None
            and slot.session.state is SessionState.IDLE
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda s: s.last_activity)

    def _detach(self, slot: _HostSlot, state: SessionState = SessionState.CLOSED) -> PooledSession | None:
        session, slot.session = slot.session, None
        if session is not None:
            session.state = state
        return session

    async def _return_slot(self, slot: _HostSlot, host_id: str) -> None:
        """Hand an idle session on to the next same-host waiter.

        Without same-host waiters but with callers queued for capacity, the
        session is evicted so its capacity unit goes to the earliest of them.
        """
        slot.checked_out = False
        has_host_waiters = any(not w.done() for w in slot.waiters)
        if has_host_waiters or slot.session is None or not self._capacity_waiters:
            self._grant_slot(slot, host_id)
            return

        session = self._detach(slot)
        self._grant_slot(slot, host_id)
        self._free_capacity()
        logger.debug("Evicted idle session for queued capacity request", host_id=host_id)
        await self._close_session(session)

    async def _evict_idle(
        self, slot: _HostSlot, host_id: str, state: SessionState = SessionState.CLOSED
    ) -> None:
        session = self._detach(slot, state)
        self._drop_if_unused(slot, host_id)
        if session is not None:
            self._free_capacity()
            await self._close_session(session)

    async def _close_session(self, session: PooledSession) -> None:
        """Close a detached session's transport."""
        try:
            await session.transport.close()
            self._stats["connections_closed"] += 1
            logger.debug(
                "Closed SSH session",
                host=session.host.endpoint,
                use_count=session.use_count,
                lifetime=(datetime.now(UTC) - session.created_at).total_seconds(),
            )
        except Exception as e:
            logger.warning(
                "Error closing SSH session",
                host=session.host.endpoint,
                error=str(e),
            )
        finally:
            session.state = SessionState.CLOSED

    # Session creation

    async def _checkout(self, slot: _HostSlot, host: Host, deadline: float) -> PooledSession:
        """Hand out the slot's idle session or open a new one. Caller owns the slot."""
        session = slot.session
        if session is not None:
            if (
                session.state is SessionState.IDLE
                and session.host == host
                and session.transport.is_alive()
            ):
                session.state = SessionState.IN_USE
                session.use_count += 1
                session.touch()
                self._stats["connections_reused"] += 1
                logger.debug(
                    "Reusing pooled session",
                    host=host.endpoint,
                    use_count=session.use_count,
                )
                return session

            logger.info(
                "Replacing stale session",
                host=host.endpoint,
                state=session.state.value,
                host_changed=session.host != host,
            )
            self._detach(slot, SessionState.UNHEALTHY)
            self._free_capacity()
            await self._close_session(session)

        await self._reserve_capacity(host, deadline)
        try:
            transport = await self._open_transport(host, deadline)
        except BaseException:
            self._free_capacity()
            raise

        if self._closed:
            self._free_capacity()
            await transport.close()
            raise PoolClosedError("Connection pool closed while connecting")

        session = PooledSession(
            host=host,
            transport=transport,
            metrics=self._metrics[host.id],
            state=SessionState.IN_USE,
            use_count=1,
        )
        slot.session = session
        return session

    async def _open_transport(self, host: Host, deadline: float) -> TransportSession:
        """Connect a fresh transport, retrying transient failures with backoff."""
        loop = asyncio.get_running_loop()
        metrics = self._metrics[host.id]
        attempts = self.settings.reconnect_attempts
        last_error: TransportError | None = None

        for attempt in range(1, attempts + 1):
            transport = self._transport_factory(host, self.settings)
            started = time.monotonic()
            try:
                await transport.connect()
            except AuthError as e:
                metrics.record_failure(e)
                self._stats["connection_errors"] += 1
                logger.error("SSH authentication failed", host=host.endpoint, error=str(e))
                raise
            except (UnreachableError, ConnectTimeoutError) as e:
                metrics.record_failure(e)
                self._stats["connection_errors"] += 1
                last_error = e
                delay = self.settings.backoff_delay(attempt)
                if attempt == attempts or loop.time() + delay > deadline:
                    break
                logger.warning(
                    "Connect attempt failed, retrying",
                    host=host.endpoint,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                continue

            metrics.record_success(time.monotonic() - started)
            self._stats["connections_created"] += 1
            logger.info(
                "Created new SSH session",
                host=host.endpoint,
                attempt=attempt,
                total_created=self._stats["connections_created"],
            )
            return transport

        logger.error("Failed to connect", host=host.endpoint, attempts=attempt, error=str(last_error))
        assert last_error is not None
        raise last_error

    # Health monitor

    async def run_health_checks(self) -> None:
        """Probe idle sessions and close expired or unhealthy ones."""
        candidates = [
            (host_id, slot)
            for host_id, slot in self._slots.items()
            if not slot.busy and slot.session is not None
        ]
        probed = evicted = 0

        for host_id, slot in candidates:
            session = slot.session
            # State may have changed while earlier probes were awaited.
            if (
                slot.busy
                or session is None
                or session.state is not SessionState.IDLE
                or self._slots.get(host_id) is not slot
            ):
                continue

            idle = session.idle_seconds()
            if idle > self.settings.max_idle_time:
                logger.info("Closing idle session", host=session.host.endpoint, idle_time=idle)
                await self._evict_idle(slot, host_id)
                evicted += 1
                continue
            if idle < self.settings.idle_check_threshold:
                continue

            slot.busy = True
            healthy = False
            probed += 1
            try:
                healthy = await session.transport.probe(self.settings.probe_timeout)
            finally:
                if healthy:
                    session.touch()
                    await self._return_slot(slot, host_id)
                else:
                    self._stats["health_check_failures"] += 1
                    evicted += 1
                    logger.warning("Session failed health probe, evicting", host=session.host.endpoint)
                    self._detach(slot, SessionState.UNHEALTHY)
                    self._grant_slot(slot, host_id)
                    self._free_capacity()
                    await self._close_session(session)

        logger.debug(
            "Health check pass complete",
            probed=probed,
            evicted=evicted,
            total_connections=self.stats().total_connections,
        )

    async def start_health_monitor(self) -> None:
        """Start the background health monitor task."""
        self._ensure_open()
        if self._monitor_task is not None and not self._monitor_task.done():
            return

        async def _monitor_loop():
            while True:
                try:
                    await asyncio.sleep(self.settings.health_check_interval)
                    await self.run_health_checks()
                except Exception as e:
                    logger.error("Error in health monitor", error=str(e))

        self._monitor_task = asyncio.create_task(_monitor_loop())
        logger.info("Started connection pool health monitor")

    async def stop_health_monitor(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Shutdown

    async def invalidate_all(self) -> None:
        """Close every session; borrowed sessions stop working immediately.

        Borrowers keep their host slot until they call release() or
        invalidate(), which then only frees the slot.
        """
        count = 0
        for host_id, slot in list(self._slots.items()):
            if slot.session is None:
                continue
            if slot.checked_out:
                session = self._detach(slot)
                self._free_capacity()
                await self._close_session(session)
                count += 1
            elif not slot.busy:
                await self._evict_idle(slot, host_id)
                count += 1
        logger.info("Invalidated all sessions", closed=count)

    async def close_all(self) -> None:
        """Close all sessions, fail pending waiters and stop the health monitor."""
        self._closed = True
        await self.stop_health_monitor()

        error = PoolClosedError("Connection pool closed")
        waiters = list(self._capacity_waiters)
        sessions = []
        for slot in self._slots.values():
            waiters.extend(slot.waiters)
            slot.waiters.clear()
            if slot.session is not None:
                sessions.append(slot.session)
                slot.session = None
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)

        self._capacity_waiters.clear()
        self._slots.clear()
        self._occupied = 0

        for session in sessions:
            await self._close_session(session)

        logger.info("SSH connection pool closed", stats=self._stats)

    def _ensure_open(self) -> None:
        if self._closed:
            raise PoolClosedError("Connection pool closed")

    # Introspection

    def stats(self) -> PoolStats:
        """Get a snapshot of pool occupancy."""
        sessions = [slot.session for slot in self._slots.values() if slot.session is not None]
        total = len(sessions)
        waiting = sum(1 for w in self._capacity_waiters if not w.done()) + sum(
            1 for slot in self._slots.values() for w in slot.waiters if not w.done()
        )
        return PoolStats(
            total_connections=total,
            healthy_connections=sum(1 for s in sessions if s.healthy),
            in_use_connections=sum(1 for s in sessions if s.state is SessionState.IN_USE),
            idle_connections=sum(1 for s in sessions if s.state is SessionState.IDLE),
            waiting_requests=waiting,
            average_use_count=(sum(s.use_count for s in sessions) / total) if total else 0.0,
            max_pool_size=self.max_pool_size,
        )

    def get_stats(self) -> dict[str, Any]:
        """Get lifetime counters merged with the current occupancy snapshot."""
        snapshot = self.stats()
        return {
            **self._stats,
            **snapshot.model_dump(),
            "utilization_rate": snapshot.utilization_rate,
            "health_rate": snapshot.health_rate,
        }

    def connection_status(self, host_id: str) -> ConnectionStatus | None:
        slot = self._slots.get(host_id)
        if slot is None or slot.session is None:
            return None
        session = slot.session
        return ConnectionStatus(
            host_id=host_id,
            state=session.state,
            healthy=session.healthy,
            in_use=session.state is SessionState.IN_USE,
            created_at=session.created_at,
            last_activity=session.last_activity,
            use_count=session.use_count,
            metrics=session.metrics.model_copy(),
        )

    def metrics(self, host_id: str) -> SessionMetrics:
        """Cumulative metrics for a host; survives session eviction."""
        metrics = self._metrics.get(host_id)
        return metrics.model_copy() if metrics is not None else SessionMetrics()
