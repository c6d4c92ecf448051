"""Deployment orchestrator.

Drives a deployment task through its state machine over a pooled SSH session:
expand the template, borrow the host's session, run each command in order and
stop at the first failure. Cancellation is cooperative and only observed
between commands.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

import structlog

from ..models.deployment import DeploymentEvent, DeploymentTask, LogEntry
from ..models.enums import DeploymentStatus, EventKind, LogLevel
from ..models.host import Host
from ..services.templates import TemplateRegistry
from .exceptions import (
    CommandFailedError,
    DeploymentError,
    PoolError,
    RemoteFileError,
    TaskNotFoundError,
    TemplateError,
    TransportError,
)
from .settings import PoolSettings
from .ssh_pool import ConnectionPool, PooledSession
from .template_engine import expand_commands, render_config, resolve_bindings, substitute

CANCELLED_MESSAGE = "Deployment cancelled"
REDACTED = "********"

DeploymentListener = Callable[[DeploymentEvent], None]


@dataclass
class DeploymentPlan:
    """Concrete steps for one task, ready to execute.

    Steps run in order: ``commands``, the config upload, the service unit
    upload, then ``service_commands``.
    """

    commands: list[str]
    config_path: str | None = None
    config_content: str | None = None
    service_path: str | None = None
    service_content: str | None = None
    service_commands: list[str] = field(default_factory=list)
    secrets: list[str] = field(default_factory=list)

    @property
    def uploads(self) -> list[tuple[str, str, str]]:
        """``(label, remote path, content)`` for every file to write."""
        files = []
        if self.config_path is not None:
            files.append(("Configuration", self.config_path, self.config_content or ""))
        if self.service_path is not None:
            files.append(("Service unit", self.service_path, self.service_content or ""))
        return files

    @property
    def total_steps(self) -> int:
        return len(self.commands) + len(self.uploads) + len(self.service_commands)

    def redact(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, REDACTED)
        return text


class DeploymentOrchestrator:
    """Runs deployment tasks against hosts using pooled sessions."""

    def __init__(
        self,
        pool: ConnectionPool,
        templates: TemplateRegistry | None = None,
        settings: PoolSettings | None = None,
    ):
        self.pool = pool
        self.templates = templates if templates is not None else TemplateRegistry()
        self.settings = settings or pool.settings
        self.logger = structlog.get_logger()

        self._tasks: dict[str, DeploymentTask] = {}
        self._targets: dict[str, Host] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._listeners: list[DeploymentListener] = []

    # Observers

    def subscribe(self, listener: DeploymentListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: DeploymentListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _emit(self, task: DeploymentTask, kind: EventKind, entry: LogEntry | None = None) -> None:
        event = DeploymentEvent(
            kind=kind,
            task_id=task.id,
            host_id=task.host_id,
            status=task.status,
            progress=task.progress,
            entry=entry.model_copy() if entry is not None else None,
            error=task.error,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception("Deployment listener failed", task_id=task.id, kind=kind)

    # Task registry

    def submit(
        self,
        host: Host,
        template_id: str | None = None,
        commands: Sequence[str] | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> DeploymentTask:
        """Create a pending task for ``host``.

        Exactly one of ``template_id`` and ``commands`` must be given.

        Raises:
            DeploymentError: Both or neither of template/commands, or host disabled
            TemplateNotFoundError: ``template_id`` is not registered
        """
        if (template_id is None) == (commands is None):
            raise DeploymentError("Exactly one of template_id or commands is required")
        if not host.enabled:
            raise DeploymentError(f"Host {host.id} is disabled")
        if template_id is not None:
            self.templates.get(template_id)

        task = DeploymentTask(
            host_id=host.id,
            template_id=template_id,
            commands=list(commands) if commands is not None else None,
            variables={name: str(value) for name, value in (variables or {}).items()},
        )
        self._tasks[task.id] = task
        self._targets[task.id] = host
        self._cancel_events[task.id] = asyncio.Event()

        self.logger.info(
            "Deployment submitted",
            task_id=task.id,
            host=host.endpoint,
            template_id=template_id,
            commands=len(commands) if commands is not None else None,
        )
        return task

    def get_task(self, task_id: str) -> DeploymentTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise TaskNotFoundError(f"Deployment task not found: {task_id}") from None

    def list_tasks(
        self, host_id: str | None = None, status: DeploymentStatus | None = None
    ) -> list[DeploymentTask]:
        """Tasks, oldest first, optionally filtered by host and status."""
        tasks = [
            task
            for task in self._tasks.values()
            if (host_id is None or task.host_id == host_id)
            and (status is None or task.status is status)
        ]
        return sorted(tasks, key=lambda t: t.created_at)

    def delete_task(self, task_id: str) -> None:
        """Forget a task. Running tasks cannot be deleted."""
        task = self.get_task(task_id)
        if task.status is DeploymentStatus.RUNNING:
            raise DeploymentError(f"Cannot delete running task {task_id}")
        del self._tasks[task_id]
        self._targets.pop(task_id, None)
        self._cancel_events.pop(task_id, None)

    # Cancellation

    def cancel(self, task_id: str) -> bool:
        """Request cancellation. Returns False when the task already finished."""
        task = self._tasks.get(task_id)
        if task is None:
            return False
        if task.status is DeploymentStatus.PENDING:
            self._finish(task, DeploymentStatus.CANCELLED, CANCELLED_MESSAGE)
            return True
        if task.status is DeploymentStatus.RUNNING:
            self._cancel_events[task_id].set()
            self.logger.info("Deployment cancellation requested", task_id=task_id)
            return True
        return False

    def cancel_all(self) -> int:
        """Cancel every pending or running task; returns how many were signalled."""
        return sum(1 for task_id in list(self._tasks) if self.cancel(task_id))

    # Templates

    def preview_commands(self, template_id: str, variables: Mapping[str, Any] | None = None) -> list[str]:
        """Expanded commands for a template without touching any host."""
        return expand_commands(self.templates.get(template_id), variables)

    def preview_config(self, template_id: str, variables: Mapping[str, Any] | None = None) -> str:
        return render_config(self.templates.get(template_id), variables)

    def preview_plan(
        self, template_id: str, variables: Mapping[str, Any] | None = None
    ) -> DeploymentPlan:
        """Every step a template deployment would run, without touching any host.

        Raises:
            TemplateNotFoundError, MissingVariableError, InvalidOptionError, InvalidTypeError
        """
        template = self.templates.get(template_id)
        values = resolve_bindings(template, variables)
        plan = DeploymentPlan(
            commands=[substitute(command, values) for command in template.commands],
            secrets=[values[name] for name in template.secret_names if values.get(name)],
        )
        if template.config_path and template.config_template:
            plan.config_path = substitute(template.config_path, values)
            plan.config_content = substitute(template.config_template, values)
        if template.service_template:
            plan.service_path = template.service_unit_path
            plan.service_content = substitute(template.service_template, values)
        plan.service_commands = list(template.service_commands)
        return plan

    def _plan(self, task: DeploymentTask) -> DeploymentPlan:
        if task.template_id is None:
            return DeploymentPlan(commands=list(task.commands or []))
        return self.preview_plan(task.template_id, task.variables)

    # Execution

    async def deploy(
        self,
        host: Host,
        template_id: str | None = None,
        commands: Sequence[str] | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> DeploymentTask:
        """Submit and run a task in one call."""
        task = self.submit(host, template_id=template_id, commands=commands, variables=variables)
        return await self.run(task.id)

    async def run(self, task_id: str) -> DeploymentTask:
        """Run a pending task to a terminal state and return it.

        Failures are recorded on the task rather than raised. Only
        :class:`InvalidTransitionError` (task not pending), unknown ids and
        asyncio cancellation of the caller propagate.
        """
        task = self.get_task(task_id)
        host = self._targets[task_id]
        cancel_event = self._cancel_events[task_id]

        task.transition(DeploymentStatus.RUNNING)
        self.logger.info(
            "Deployment started", task_id=task_id, host=host.endpoint, template_id=task.template_id
        )

        try:
            plan = self._plan(task)
        except TemplateError as e:
            self._finish(task, DeploymentStatus.FAILED, str(e))
            return task
        if plan.total_steps == 0:
            self._finish(task, DeploymentStatus.FAILED, "No commands to execute")
            return task
        if cancel_event.is_set():
            self._finish(task, DeploymentStatus.CANCELLED, CANCELLED_MESSAGE)
            return task

        try:
            session = await self.pool.acquire(host)
        except asyncio.CancelledError:
            self._finish(task, DeploymentStatus.CANCELLED, CANCELLED_MESSAGE)
            raise
        except (PoolError, TransportError) as e:
            self._finish(task, DeploymentStatus.FAILED, f"Failed to acquire session: {e}")
            return task

        broken = False
        try:
            completed = await self._execute_plan(task, session, plan, cancel_event)
            if completed:
                self._finish(task, DeploymentStatus.COMPLETED)
            else:
                self._finish(task, DeploymentStatus.CANCELLED, CANCELLED_MESSAGE)
        except asyncio.CancelledError:
            broken = True
            self._finish(task, DeploymentStatus.CANCELLED, CANCELLED_MESSAGE)
            raise
        except TransportError as e:
            broken = True
            self._finish(task, DeploymentStatus.FAILED, plan.redact(str(e)))
        except (CommandFailedError, RemoteFileError) as e:
            self._finish(task, DeploymentStatus.FAILED, plan.redact(str(e)))
        finally:
            if broken:
                await self.pool.invalidate(host.id)
            else:
                await self.pool.release(host.id)
        return task

    async def _execute_plan(
        self,
        task: DeploymentTask,
        session: PooledSession,
        plan: DeploymentPlan,
        cancel_event: asyncio.Event,
    ) -> bool:
        """Run every step; False when cancellation stopped it early."""
        total = plan.total_steps
        done = 0

        for command in plan.commands:
            if cancel_event.is_set():
                return False
            await self._run_command(task, session, plan, command)
            done += 1
            self._step_completed(task, done, total)

        for label, remote_path, content in plan.uploads:
            if cancel_event.is_set():
                return False
            try:
                await session.write_file(remote_path, content)
            except (TransportError, RemoteFileError) as e:
                entry = task.add_log(
                    LogLevel.ERROR, f"Failed to write {label.lower()}: {plan.redact(str(e))}"
                )
                self._emit(task, "progress", entry)
                raise
            done += 1
            task.add_log(LogLevel.SUCCESS, f"{label} written to {remote_path}")
            self._step_completed(task, done, total)

        for command in plan.service_commands:
            if cancel_event.is_set():
                return False
            await self._run_command(task, session, plan, command)
            done += 1
            self._step_completed(task, done, total)

        return True

    async def _run_command(
        self, task: DeploymentTask, session: PooledSession, plan: DeploymentPlan, command: str
    ) -> None:
        """Run one command, logging it; raises on transport errors or non-zero exit."""
        shown = plan.redact(command)
        try:
            result = await session.execute(command, self.settings.command_timeout)
        except TransportError as e:
            entry = task.add_log(LogLevel.ERROR, plan.redact(str(e)), command=shown)
            self._emit(task, "progress", entry)
            raise

        task.last_command_result = result.model_copy(
            update={
                "command": shown,
                "stdout": plan.redact(result.stdout),
                "stderr": plan.redact(result.stderr),
            }
        )
        output = plan.redact(result.output)
        if not result.succeeded:
            entry = task.add_log(
                LogLevel.ERROR,
                f"Command failed with exit code {result.exit_status}",
                command=shown,
                output=output,
            )
            self._emit(task, "progress", entry)
            raise CommandFailedError(task.last_command_result)

        task.add_log(LogLevel.SUCCESS, "Command completed", command=shown, output=output)
        self.logger.debug(
            "Deployment command completed", task_id=task.id, duration=result.duration
        )

    def _step_completed(self, task: DeploymentTask, done: int, total: int) -> None:
        task.progress = done / total
        self.logger.debug("Deployment step completed", task_id=task.id, step=done, total=total)
        self._emit(task, "progress", task.logs[-1])

    def _finish(self, task: DeploymentTask, status: DeploymentStatus, error: str | None = None) -> None:
        task.transition(status, error)
        log = self.logger.info if status is DeploymentStatus.COMPLETED else self.logger.warning
        log(
            "Deployment finished",
            task_id=task.id,
            host_id=task.host_id,
            status=status.value,
            error=error,
            steps_logged=len(task.logs),
        )
        self._emit(task, "terminal")
