"""Shared pytest fixtures for vps-deploy tests."""

import asyncio
from collections import defaultdict
from typing import Callable

import pytest
import structlog

from vps_deploy.core.exceptions import DisconnectedError
from vps_deploy.core.settings import PoolSettings
from vps_deploy.core.ssh_pool import ConnectionPool
from vps_deploy.core.transport import TransportSession, validate_remote_path
from vps_deploy.models.deployment import CommandResult
from vps_deploy.models.host import Host


class FakeSession(TransportSession):
    """In-memory transport session driven by its factory's scripted outcomes."""

    def __init__(self, host: Host, settings: PoolSettings, factory: "FakeTransportFactory"):
        super().__init__(host, settings)
        self.factory = factory
        self.connected = False
        self.closed = False
        self.alive = True
        self.executed: list[str] = []
        self.written: dict[str, str] = {}

    async def connect(self) -> None:
        await asyncio.sleep(0)
        errors = self.factory.connect_errors[self.host.id]
        if errors:
            raise errors.pop(0)
        self.connected = True

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        if self.closed or not self.connected:
            raise DisconnectedError(f"Session to {self.host.endpoint} is not connected")
        self.executed.append(command)
        self.factory.executed.append((self.host.id, command))

        gate = self.factory.gates.get(command)
        if gate is not None:
            await gate.wait()

        outcome = self.factory.outcomes.get(command, 0)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == 0:
            return CommandResult(command=command, exit_status=0, stdout=f"{command}: ok\n")
        return CommandResult(command=command, exit_status=outcome, stderr=f"{command}: failed\n")

    async def write_file(self, remote_path: str, content: str) -> None:
        validate_remote_path(remote_path)
        if self.closed:
            raise DisconnectedError("closed")
        self.written[remote_path] = content
        self.factory.written[remote_path] = content

    async def close(self) -> None:
        self.closed = True
        self.connected = False
        if self.factory.close_delay:
            await asyncio.sleep(self.factory.close_delay)

    def is_alive(self) -> bool:
        return self.connected and self.alive and not self.closed


class FakeTransportFactory:
    """Transport factory recording every session it builds.

    ``outcomes`` maps a command to an exit status or an exception to raise,
    ``gates`` maps a command to an event it waits on before finishing and
    ``connect_errors`` lists errors raised by successive connects per host.
    A non-zero ``close_delay`` makes every close take that long after the
    session has already stopped working, like a blocking close in a thread.
    """

    def __init__(self):
        self.close_delay = 0.0
        self.sessions: list[FakeSession] = []
        self.outcomes: dict[str, int | BaseException] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.connect_errors: dict[str, list[BaseException]] = defaultdict(list)
        self.executed: list[tuple[str, str]] = []
        self.written: dict[str, str] = {}

    def __call__(self, host: Host, settings: PoolSettings) -> FakeSession:
        session = FakeSession(host, settings, self)
        self.sessions.append(session)
        return session

    def sessions_for(self, host_id: str) -> list[FakeSession]:
        return [session for session in self.sessions if session.host.id == host_id]


async def _wait_until(predicate: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def wait_until():
    """Yield to the event loop until a predicate holds."""
    return _wait_until


@pytest.fixture(scope="session", autouse=True)
def configure_structlog():
    """Route structlog through stdlib logging so pytest captures it."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@pytest.fixture
def temp_log_dir(tmp_path):
    """Create temporary log directory for testing."""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir


@pytest.fixture
def settings() -> PoolSettings:
    """Small pool with fast timeouts and no reconnect backoff."""
    return PoolSettings(
        max_pool_size=2,
        acquire_timeout=1.0,
        reconnect_attempts=3,
        reconnect_base_delay=0.0,
        health_check_interval=60.0,
        idle_check_threshold=30.0,
        max_idle_time=300.0,
        command_timeout=5.0,
    )


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def make_host() -> Callable[..., Host]:
    """Build hosts with sensible defaults."""

    def _make_host(host_id: str = "web-1", **overrides) -> Host:
        data = {
            "id": host_id,
            "address": f"{host_id}.example.com",
            "username": "deploy",
            "key_path": "/home/deploy/.ssh/id_ed25519",
        }
        data.update(overrides)
        return Host(**data)

    return _make_host


@pytest.fixture
def host(make_host) -> Host:
    return make_host("web-1")


@pytest.fixture
async def pool(settings, transport_factory):
    """Create a test connection pool backed by fake sessions."""
    pool = ConnectionPool(settings, transport_factory=transport_factory)
    yield pool
    await pool.close_all()
