"""Enum definitions for pooled sessions and deployment tasks."""

from enum import Enum
from types import MappingProxyType
from typing import Literal

# Type aliases
EventKind = Literal["progress", "terminal"]


class SessionState(Enum):
    """Lifecycle state of a pooled SSH session."""

    IDLE = "idle"
    IN_USE = "in_use"
    UNHEALTHY = "unhealthy"
    CLOSED = "closed"


class DeploymentStatus(Enum):
    """Deployment task state machine."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not DEPLOYMENT_TRANSITIONS[self]

    def can_transition_to(self, target: "DeploymentStatus") -> bool:
        return target in DEPLOYMENT_TRANSITIONS[self]


DEPLOYMENT_TRANSITIONS: MappingProxyType[DeploymentStatus, frozenset[DeploymentStatus]] = (
    MappingProxyType(
        {
            DeploymentStatus.PENDING: frozenset(
                {DeploymentStatus.RUNNING, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
            ),
            DeploymentStatus.RUNNING: frozenset(
                {DeploymentStatus.COMPLETED, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
            ),
            DeploymentStatus.COMPLETED: frozenset(),
            DeploymentStatus.FAILED: frozenset(),
            DeploymentStatus.CANCELLED: frozenset(),
        }
    )
)


class LogLevel(Enum):
    """Severity of a deployment log entry."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class VariableType(Enum):
    """Declared type of a template variable."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    PASSWORD = "password"
