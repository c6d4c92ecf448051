"""
Tests for host, template, pool and deployment models.
"""

import pytest
from pydantic import ValidationError

from vps_deploy.core.exceptions import CommandFailedError, InvalidTransitionError
from vps_deploy.models import (
    DEPLOYMENT_TRANSITIONS,
    CommandResult,
    DeploymentStatus,
    DeploymentTask,
    DeploymentTemplate,
    Host,
    LogLevel,
    PoolStats,
    SessionMetrics,
    TemplateVariable,
    VariableType,
)


class TestHost:
    """Test Host model validation."""

    def test_host_minimal_required_fields(self):
        host = Host(id="web-1", address="203.0.113.10", username="deploy")

        assert host.name == "web-1"
        assert host.port == 22
        assert host.group == "default"
        assert host.tags == []
        assert host.enabled is True
        assert host.has_credential is False
        assert host.endpoint == "deploy@203.0.113.10:22"

    def test_host_strips_address_and_username(self):
        host = Host(id="a", address="  example.com ", username=" root ", password="x")

        assert host.address == "example.com"
        assert host.username == "root"
        assert host.has_credential is True

    @pytest.mark.parametrize("port", [0, 65536, -22])
    def test_host_port_range(self, port):
        with pytest.raises(ValidationError):
            Host(id="a", address="example.com", username="root", port=port)

    @pytest.mark.parametrize("field", ["address", "username"])
    def test_host_blank_fields_rejected(self, field):
        data = {"id": "a", "address": "example.com", "username": "root", field: "   "}
        with pytest.raises(ValidationError):
            Host(**data)

    def test_host_repr_hides_secrets(self):
        host = Host(id="a", address="example.com", username="root", password="hunter2")

        assert "hunter2" not in repr(host)


class TestTemplateModels:
    """Test template and variable validation."""

    def test_select_requires_options(self):
        with pytest.raises(ValidationError):
            TemplateVariable(name="env", type=VariableType.SELECT)

    def test_variable_name_must_be_identifier(self):
        with pytest.raises(ValidationError):
            TemplateVariable(name="not valid")

    def test_duplicate_variables_rejected(self):
        with pytest.raises(ValidationError):
            DeploymentTemplate(
                id="t",
                name="T",
                variables=(TemplateVariable(name="a"), TemplateVariable(name="a")),
            )

    def test_config_path_must_be_absolute(self):
        with pytest.raises(ValidationError):
            DeploymentTemplate(id="t", name="T", config_path="etc/app.conf")

    def test_service_template_requires_name(self):
        with pytest.raises(ValidationError):
            DeploymentTemplate(id="t", name="T", service_template="[Service]\n")

    def test_service_name_rejects_paths(self):
        with pytest.raises(ValidationError):
            DeploymentTemplate(id="t", name="T", service_name="../evil")

    def test_service_unit_path_and_commands(self):
        template = DeploymentTemplate(id="t", name="T", service_name="app")
        plain = DeploymentTemplate(id="p", name="P")

        assert template.service_unit_path == "/etc/systemd/system/app.service"
        assert template.service_commands == (
            "systemctl daemon-reload",
            "systemctl enable app",
            "systemctl start app",
            "systemctl is-active app",
        )
        assert plain.service_unit_path is None
        assert plain.service_commands == ()

    def test_template_is_frozen(self):
        template = DeploymentTemplate(id="t", name="T", commands=["a", "b"])

        assert template.commands == ("a", "b")
        with pytest.raises(ValidationError):
            template.name = "changed"

    def test_secret_names(self):
        template = DeploymentTemplate(
            id="t",
            name="T",
            variables=(
                TemplateVariable(name="user"),
                TemplateVariable(name="pw", type=VariableType.PASSWORD),
            ),
        )

        assert template.secret_names == frozenset({"pw"})


class TestPoolModels:
    """Test metrics and stats arithmetic."""

    def test_session_metrics(self):
        metrics = SessionMetrics()
        metrics.record_success(0.2)
        metrics.record_success(0.4)
        metrics.record_failure(RuntimeError("refused"))

        assert metrics.total_attempts == 3
        assert metrics.success_rate == pytest.approx(2 / 3)
        assert metrics.average_latency == pytest.approx(0.3)
        assert metrics.last_error == "refused"

    def test_pool_stats_rates(self):
        stats = PoolStats(
            total_connections=4, healthy_connections=3, in_use_connections=2, max_pool_size=10
        )

        assert stats.utilization_rate == pytest.approx(0.2)
        assert stats.health_rate == pytest.approx(0.75)

    def test_empty_pool_stats_rates(self):
        stats = PoolStats(max_pool_size=10)

        assert stats.utilization_rate == 0.0
        assert stats.health_rate == 0.0


class TestDeploymentModels:
    """Test the task state machine and results."""

    def test_transition_table_is_immutable(self):
        with pytest.raises(TypeError):
            DEPLOYMENT_TRANSITIONS[DeploymentStatus.COMPLETED] = frozenset()

    @pytest.mark.parametrize(
        "status", [DeploymentStatus.COMPLETED, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED]
    )
    def test_terminal_states(self, status):
        assert status.is_terminal is True
        assert all(not status.can_transition_to(target) for target in DeploymentStatus)

    def test_happy_path(self):
        task = DeploymentTask(host_id="a", commands=["x"])

        task.transition(DeploymentStatus.RUNNING)
        assert task.started_at is not None
        task.transition(DeploymentStatus.COMPLETED)

        assert task.progress == 1.0
        assert task.completed_at is not None
        assert task.is_finished is True
        assert task.error is None

    def test_pending_can_fail_or_cancel(self):
        failed = DeploymentTask(host_id="a")
        failed.transition(DeploymentStatus.FAILED, "bad template")
        cancelled = DeploymentTask(host_id="a")
        cancelled.transition(DeploymentStatus.CANCELLED, "stopped")

        assert failed.error == "bad template"
        assert cancelled.error == "stopped"

    @pytest.mark.parametrize(
        "path",
        [
            [DeploymentStatus.COMPLETED],
            [DeploymentStatus.RUNNING, DeploymentStatus.PENDING],
            [DeploymentStatus.RUNNING, DeploymentStatus.FAILED, DeploymentStatus.RUNNING],
        ],
    )
    def test_illegal_transitions(self, path):
        task = DeploymentTask(host_id="a")
        *legal, illegal = path
        for status in legal:
            task.transition(status)

        with pytest.raises(InvalidTransitionError):
            task.transition(illegal)

    def test_add_log(self):
        task = DeploymentTask(host_id="a")

        entry = task.add_log(LogLevel.SUCCESS, "done", command="ls", output="file")

        assert task.logs == [entry]
        assert entry.command == "ls"

    def test_task_ids_unique(self):
        assert DeploymentTask(host_id="a").id != DeploymentTask(host_id="a").id

    def test_command_result_output(self):
        result = CommandResult(command="ls", exit_status=0, stdout="a\n", stderr="  \n")

        assert result.succeeded is True
        assert result.output == "a"

    def test_command_failed_error_message(self):
        result = CommandResult(command="make", exit_status=2, stderr="make: *** no rule\n")

        error = CommandFailedError(result)

        assert str(error) == "Command failed with exit code 2: make: *** no rule"
        assert error.result is result
