"""Deployment task, log and event models."""

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from ..core.exceptions import InvalidTransitionError
from .enums import DeploymentStatus, EventKind, LogLevel


def _now() -> datetime:
    return datetime.now(UTC)


class CommandResult(BaseModel):
    """Captured result of one remote command."""

    command: str
    exit_status: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0

    @property
    def output(self) -> str:
        """Combined stdout/stderr, trimmed."""
        parts = [part.strip() for part in (self.stdout, self.stderr) if part.strip()]
        return "\n".join(parts)


class LogEntry(BaseModel):
    """A single deployment log line."""

    timestamp: datetime = Field(default_factory=_now)
    level: LogLevel
    message: str
    command: str | None = None
    output: str | None = None


class DeploymentTask(BaseModel):
    """One ordered-command execution run against one host.

    Only the orchestrator mutates a task; observers receive copies through
    :class:`DeploymentEvent`.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    host_id: str
    template_id: str | None = None
    commands: list[str] | None = None
    variables: dict[str, str] = Field(default_factory=dict)
    status: DeploymentStatus = DeploymentStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    logs: list[LogEntry] = Field(default_factory=list)
    error: str | None = None
    created_at: datetime = Field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_command_result: CommandResult | None = None

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    def transition(self, target: DeploymentStatus, error: str | None = None) -> None:
        """Move to ``target`` or raise :class:`InvalidTransitionError`."""
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(
                f"Task {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        if target is DeploymentStatus.RUNNING:
            self.started_at = _now()
            self.progress = 0.0
        elif target.is_terminal:
            self.completed_at = _now()
            if target is DeploymentStatus.COMPLETED:
                self.progress = 1.0
            else:
                self.error = error

    def add_log(
        self,
        level: LogLevel,
        message: str,
        command: str | None = None,
        output: str | None = None,
    ) -> LogEntry:
        entry = LogEntry(level=level, message=message, command=command, output=output)
        self.logs.append(entry)
        return entry


class DeploymentEvent(BaseModel):
    """Progress or terminal notification delivered to observers."""

    kind: EventKind
    task_id: str
    host_id: str
    status: DeploymentStatus
    progress: float
    entry: LogEntry | None = None
    error: str | None = None
