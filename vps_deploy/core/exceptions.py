"""Core exceptions for VPS deployment operations."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models.deployment import CommandResult


class VPSDeployError(Exception):
    """Base exception for VPS deployment operations."""


class ConfigurationError(VPSDeployError):
    """Configuration validation or loading failed."""


class DeployTimeoutError(VPSDeployError, TimeoutError):
    """An operation exceeded its deadline (connect, execute or acquire)."""


# Transport errors


class TransportError(VPSDeployError):
    """SSH transport related errors."""


class AuthError(TransportError):
    """The remote host rejected the supplied credentials."""


class UnreachableError(TransportError):
    """The remote host could not be reached."""


class DisconnectedError(TransportError):
    """The SSH channel is gone or dropped while in use."""


class ConnectTimeoutError(TransportError, DeployTimeoutError):
    """Opening the SSH connection timed out."""


class CommandTimeoutError(TransportError, DeployTimeoutError):
    """A remote command did not finish within its timeout."""

    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {timeout} seconds: {command}")
        self.command = command
        self.timeout = timeout


class RemoteFileError(VPSDeployError):
    """Writing a file on the remote host failed (path or permission problem)."""


# Pool errors


class PoolError(VPSDeployError):
    """Connection pool errors."""


class CapacityExceededError(PoolError):
    """No pool slot became free before the acquire timeout elapsed."""


class AcquireTimeoutError(PoolError, DeployTimeoutError):
    """The host's session stayed busy for longer than the acquire timeout."""


class PoolClosedError(PoolError):
    """The pool has been shut down."""


# Template errors


class TemplateError(VPSDeployError):
    """Template validation or lookup failed."""


class TemplateNotFoundError(TemplateError):
    """No template is registered under the requested id."""


class MissingVariableError(TemplateError):
    """A required template variable has no value and no default."""

    def __init__(self, name: str):
        super().__init__(f"Missing required variable: {name}")
        self.name = name


class InvalidOptionError(TemplateError):
    """A select variable received a value outside its declared options."""

    def __init__(self, name: str, value: str, options: list[str]):
        super().__init__(
            f"Invalid option for variable {name}: {value!r} (expected one of {', '.join(options)})"
        )
        self.name = name
        self.value = value
        self.options = options


class InvalidTypeError(TemplateError):
    """A number or boolean variable received an unparsable value."""

    def __init__(self, name: str, value: str, expected: str):
        super().__init__(f"Invalid {expected} value for variable {name}: {value!r}")
        self.name = name
        self.value = value
        self.expected = expected


# Deployment errors


class DeploymentError(VPSDeployError):
    """Deployment task errors."""


class TaskNotFoundError(DeploymentError):
    """No deployment task is known under the requested id."""


class InvalidTransitionError(DeploymentError):
    """A deployment task was moved along an edge its state machine forbids."""


class CommandFailedError(DeploymentError):
    """A remote command exited with a non-zero status."""

    def __init__(self, result: CommandResult):
        detail = result.stderr.strip() or result.stdout.strip() or "Command failed"
        super().__init__(f"Command failed with exit code {result.exit_status}: {detail}")
        self.result = result
