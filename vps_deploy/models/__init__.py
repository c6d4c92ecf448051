"""Data models for VPS deployment."""

from .deployment import (  # noqa: F401
    CommandResult,
    DeploymentEvent,
    DeploymentTask,
    LogEntry,
)
from .enums import (  # noqa: F401
    DEPLOYMENT_TRANSITIONS,
    DeploymentStatus,
    LogLevel,
    SessionState,
    VariableType,
)
from .host import Host  # noqa: F401
from .pool import ConnectionStatus, PoolStats, SessionMetrics  # noqa: F401
from .template import DeploymentTemplate, TemplateVariable  # noqa: F401

__all__ = [
    # Deployment models
    "CommandResult",
    "DeploymentEvent",
    "DeploymentTask",
    "LogEntry",
    # Enums
    "DEPLOYMENT_TRANSITIONS",
    "DeploymentStatus",
    "LogLevel",
    "SessionState",
    "VariableType",
    # Host models
    "Host",
    # Pool models
    "ConnectionStatus",
    "PoolStats",
    "SessionMetrics",
    # Template models
    "DeploymentTemplate",
    "TemplateVariable",
]
