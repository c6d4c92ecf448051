"""Deployment template models."""

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import VariableType

SYSTEMD_UNIT_DIR = "/etc/systemd/system"


class TemplateVariable(BaseModel):
    """A typed variable declared by a deployment template."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    description: str = ""
    type: VariableType = VariableType.STRING
    required: bool = False
    default: str | None = None
    options: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_options(self) -> "TemplateVariable":
        if self.type is VariableType.SELECT and not self.options:
            raise ValueError(f"select variable {self.name!r} must declare options")
        return self

    @property
    def is_secret(self) -> bool:
        return self.type is VariableType.PASSWORD


class DeploymentTemplate(BaseModel):
    """Reusable command/config skeleton. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    description: str = ""
    category: str = "general"
    tags: tuple[str, ...] = ()
    commands: tuple[str, ...] = ()
    config_template: str = ""
    config_path: str | None = None
    service_name: str | None = Field(default=None, pattern=r"^[A-Za-z0-9_.@-]+$")
    service_template: str = ""
    variables: tuple[TemplateVariable, ...] = ()

    @model_validator(mode="after")
    def _check_variables(self) -> "DeploymentTemplate":
        names = [variable.name for variable in self.variables]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate template variables: {', '.join(duplicates)}")
        if self.config_path and not self.config_path.startswith("/"):
            raise ValueError("config_path must be absolute")
        if self.service_template and not self.service_name:
            raise ValueError("service_template requires service_name")
        return self

    @property
    def secret_names(self) -> frozenset[str]:
        return frozenset(v.name for v in self.variables if v.is_secret)

    @property
    def service_unit_path(self) -> str | None:
        if not self.service_name:
            return None
        return f"{SYSTEMD_UNIT_DIR}/{self.service_name}.service"

    @property
    def service_commands(self) -> tuple[str, ...]:
        """Reload systemd, then enable, start and verify the service."""
        if not self.service_name:
            return ()
        return (
            "systemctl daemon-reload",
            f"systemctl enable {self.service_name}",
            f"systemctl start {self.service_name}",
            f"systemctl is-active {self.service_name}",
        )
