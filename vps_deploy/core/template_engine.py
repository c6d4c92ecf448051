"""Template variable resolution and placeholder expansion.

Placeholders have the form ``{name}``. Expansion is a single pass over the
template text: unknown placeholders are left untouched and substituted values
are never scanned again, so expanding an already expanded string is a no-op
as long as the bound values contain no placeholders of their own.
"""

import math
import re
from typing import Any, Mapping

import structlog

from ..models.enums import VariableType
from ..models.template import DeploymentTemplate, TemplateVariable
from .exceptions import InvalidOptionError, InvalidTypeError, MissingVariableError

logger = structlog.get_logger()

PLACEHOLDER_PATTERN = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

TRUE_VALUES = frozenset({"true", "yes", "on", "1"})
FALSE_VALUES = frozenset({"false", "no", "off", "0"})


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _coerce(variable: TemplateVariable, value: str) -> str:
    if variable.type is VariableType.SELECT:
        if value not in variable.options:
            raise InvalidOptionError(variable.name, value, list(variable.options))
    elif variable.type is VariableType.NUMBER:
        value = value.strip()
        try:
            number = float(value)
        except ValueError:
            raise InvalidTypeError(variable.name, value, "number") from None
        if not math.isfinite(number):
            raise InvalidTypeError(variable.name, value, "number")
        return value
    elif variable.type is VariableType.BOOLEAN:
        lowered = value.strip().lower()
        if lowered in TRUE_VALUES:
            return "true"
        if lowered in FALSE_VALUES:
            return "false"
        raise InvalidTypeError(variable.name, value, "boolean")
    return value


def resolve_bindings(
    template: DeploymentTemplate, bindings: Mapping[str, Any] | None = None
) -> dict[str, str]:
    """Validate ``bindings`` against the template's declared variables.

    Missing or empty values fall back to the variable's default. A required
    variable left without a value raises :class:`MissingVariableError`; an
    optional one resolves to the empty string. Bindings for undeclared names
    pass through unchanged.

    Raises:
        MissingVariableError, InvalidOptionError, InvalidTypeError
    """
    supplied = {name: _to_text(value) for name, value in (bindings or {}).items()}
    resolved = dict(supplied)

    for variable in template.variables:
        value = supplied.get(variable.name, "")
        if value == "" and variable.default is not None:
            value = variable.default
        if value == "":
            if variable.required:
                raise MissingVariableError(variable.name)
            resolved[variable.name] = ""
            continue
        resolved[variable.name] = _coerce(variable, value)

    logger.debug(
        "Resolved template variables",
        template_id=template.id,
        variables=sorted(resolved),
        secrets=sorted(template.secret_names & resolved.keys()),
    )
    return resolved


def substitute(text: str, values: Mapping[str, str]) -> str:
    """Replace every ``{name}`` placeholder that has a value."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        return values[name] if name in values else match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def placeholders(text: str) -> set[str]:
    """Names referenced by ``{name}`` placeholders in ``text``."""
    return set(PLACEHOLDER_PATTERN.findall(text))


def expand_commands(
    template: DeploymentTemplate, bindings: Mapping[str, Any] | None = None
) -> list[str]:
    """Resolve bindings and expand each template command, in order."""
    values = resolve_bindings(template, bindings)
    return [substitute(command, values) for command in template.commands]


def render_config(
    template: DeploymentTemplate, bindings: Mapping[str, Any] | None = None
) -> str:
    """Resolve bindings and render the template's configuration text."""
    values = resolve_bindings(template, bindings)
    return substitute(template.config_template, values)
