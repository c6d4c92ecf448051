"""SSH transport sessions consumed by the connection pool."""

import asyncio
import functools
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import structlog
from paramiko import AuthenticationException, AutoAddPolicy, Channel, SSHClient
from paramiko.ssh_exception import SSHException

from ..models.deployment import CommandResult
from ..models.host import Host
from .exceptions import (
    AuthError,
    CommandTimeoutError,
    ConnectTimeoutError,
    DisconnectedError,
    RemoteFileError,
    TransportError,
    UnreachableError,
)
from .settings import KEEPALIVE_COMMAND, PoolSettings

logger = structlog.get_logger()

# Extra time granted to the executor beyond the channel timeout before the
# command is abandoned.
EXECUTE_GRACE = 5.0

RECV_SIZE = 32768
POLL_INTERVAL = 0.01


class TransportSession(ABC):
    """One authenticated remote-command channel to a single host."""

    def __init__(self, host: Host, settings: PoolSettings):
        self.host = host
        self.settings = settings

    @abstractmethod
    async def connect(self) -> None:
        """Open and authenticate the channel.

        Raises:
            AuthError, ConnectTimeoutError, UnreachableError
        """

    @abstractmethod
    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run ``command`` and capture its exit status and output.

        Raises:
            CommandTimeoutError, DisconnectedError
        """

    @abstractmethod
    async def write_file(self, remote_path: str, content: str) -> None:
        """Upload ``content`` to ``remote_path`` on the host."""

    @abstractmethod
    async def close(self) -> None:
        """Release underlying resources. Safe to call more than once."""

    @abstractmethod
    def is_alive(self) -> bool:
        """Cheap, non-blocking transport-level liveness check."""

    async def probe(self, timeout: float | None = None) -> bool:
        """Verify the session still answers by running a no-op command."""
        try:
            result = await self.execute(KEEPALIVE_COMMAND, timeout or self.settings.probe_timeout)
        except TransportError as e:
            logger.debug("Health probe failed", host=self.host.endpoint, error=str(e))
            return False
        return result.succeeded


def validate_remote_path(remote_path: str) -> None:
    if not remote_path.startswith("/") or ".." in remote_path.split("/"):
        raise RemoteFileError(f"Invalid remote path: {remote_path}")


def _drain_channel(channel: Channel, timeout: float) -> tuple[bytes, bytes]:
    """Collect stdout and stderr until the remote command exits.

    Both streams are read as data arrives, so neither can fill the channel
    window while the other is being waited on.
    """
    deadline = time.monotonic() + timeout
    out, err = bytearray(), bytearray()
    while True:
        received = False
        if channel.recv_ready():
            out += channel.recv(RECV_SIZE)
            received = True
        if channel.recv_stderr_ready():
            err += channel.recv_stderr(RECV_SIZE)
            received = True
        if received:
            continue
        if channel.exit_status_ready():
            break
        if time.monotonic() > deadline:
            raise TimeoutError(f"no exit status after {timeout} seconds")
        time.sleep(POLL_INTERVAL)

    # Data still buffered when the exit status arrived.
    for chunk in iter(lambda: channel.recv(RECV_SIZE), b""):
        out += chunk
    for chunk in iter(lambda: channel.recv_stderr(RECV_SIZE), b""):
        err += chunk
    return bytes(out), bytes(err)


class ParamikoSession(TransportSession):
    """Transport session backed by :class:`paramiko.SSHClient`.

    Blocking paramiko calls run in the default thread pool executor.
    """

    def __init__(self, host: Host, settings: PoolSettings):
        super().__init__(host, settings)
        self._client: SSHClient | None = None

    def _connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "hostname": self.host.address,
            "port": self.host.port,
            "username": self.host.username,
            "timeout": self.settings.connect_timeout,
            "banner_timeout": self.settings.connect_timeout,
            "auth_timeout": self.settings.auth_timeout,
        }

        # Add authentication parameters
        if self.host.key_path:
            kwargs["key_filename"] = self.host.key_path
            if self.host.key_passphrase:
                kwargs["passphrase"] = self.host.key_passphrase
        elif self.host.password:
            kwargs["password"] = self.host.password
            kwargs["allow_agent"] = False
            kwargs["look_for_keys"] = False
        return kwargs

    async def connect(self) -> None:
        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, functools.partial(client.connect, **self._connect_kwargs())
            )
        except AuthenticationException as e:
            client.close()
            raise AuthError(f"Authentication failed for {self.host.endpoint}: {e}") from e
        except TimeoutError as e:
            client.close()
            raise ConnectTimeoutError(f"Connection to {self.host.endpoint} timed out") from e
        except (SSHException, EOFError, OSError) as e:
            client.close()
            raise UnreachableError(f"Failed to connect to {self.host.endpoint}: {e}") from e

        transport = client.get_transport()
        if transport and self.settings.keepalive_interval:
            transport.set_keepalive(self.settings.keepalive_interval)

        self._client = client
        logger.debug("Opened SSH session", host=self.host.endpoint)

    def _require_client(self) -> SSHClient:
        client = self._client
        if client is None:
            raise DisconnectedError(f"Session to {self.host.endpoint} is not connected")
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise DisconnectedError(f"Session to {self.host.endpoint} dropped")
        return client

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        timeout = timeout or self.settings.command_timeout
        client = self._require_client()

        def _execute() -> CommandResult:
            started = time.monotonic()
            try:
                _, stdout, _ = client.exec_command(command, timeout=timeout)
                channel = stdout.channel
                try:
                    raw_out, raw_err = _drain_channel(channel, timeout)
                    exit_status = channel.recv_exit_status()
                finally:
                    channel.close()
            except TimeoutError as e:
                raise CommandTimeoutError(command, timeout) from e
            except (SSHException, EOFError, OSError) as e:
                raise DisconnectedError(f"Channel to {self.host.endpoint} failed: {e}") from e

            if exit_status < 0:
                raise DisconnectedError(
                    f"Channel to {self.host.endpoint} closed without an exit status"
                )
            return CommandResult(
                command=command,
                exit_status=exit_status,
                stdout=raw_out.decode("utf-8", errors="replace"),
                stderr=raw_err.decode("utf-8", errors="replace"),
                duration=time.monotonic() - started,
            )

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, _execute), timeout + EXECUTE_GRACE
            )
        except asyncio.TimeoutError as e:
            raise CommandTimeoutError(command, timeout) from e

    async def write_file(self, remote_path: str, content: str) -> None:
        validate_remote_path(remote_path)
        client = self._require_client()

        def _write() -> None:
            try:
                sftp = client.open_sftp()
            except (SSHException, EOFError) as e:
                raise DisconnectedError(f"SFTP to {self.host.endpoint} failed: {e}") from e
            try:
                with sftp.open(remote_path, "w") as remote_file:
                    remote_file.write(content)
            except (SSHException, EOFError) as e:
                raise DisconnectedError(f"SFTP to {self.host.endpoint} failed: {e}") from e
            except OSError as e:
                raise RemoteFileError(f"Failed to write {remote_path}: {e}") from e
            finally:
                sftp.close()

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write)
        logger.debug(
            "Wrote remote file", host=self.host.endpoint, path=remote_path, size=len(content)
        )

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, client.close)
        logger.debug("Closed SSH session", host=self.host.endpoint)

    def is_alive(self) -> bool:
        if self._client is None:
            return False
        try:
            # Send a keepalive packet
            transport = self._client.get_transport()
            if transport and transport.is_active():
                transport.send_ignore()
                return True
        except (SSHException, EOFError, OSError):
            return False
        return False


TransportFactory = Callable[[Host, PoolSettings], TransportSession]
