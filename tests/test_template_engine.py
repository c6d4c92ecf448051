"""Tests for template variable resolution and expansion."""

import pytest

from vps_deploy.core.exceptions import (
    InvalidOptionError,
    InvalidTypeError,
    MissingVariableError,
    TemplateError,
)
from vps_deploy.core.template_engine import (
    expand_commands,
    placeholders,
    render_config,
    resolve_bindings,
    substitute,
)
from vps_deploy.models.enums import VariableType
from vps_deploy.models.template import DeploymentTemplate, TemplateVariable


def _template(*variables: TemplateVariable, commands=("connect {host}:{port}",), config="") -> DeploymentTemplate:
    return DeploymentTemplate(
        id="t", name="Test", commands=commands, config_template=config, variables=variables
    )


class TestResolveBindings:
    """Test binding validation and defaults."""

    def test_default_used_for_missing_value(self):
        template = _template(TemplateVariable(name="port", default="22"))

        assert resolve_bindings(template, {}) == {"port": "22"}

    def test_default_used_for_empty_value(self):
        template = _template(TemplateVariable(name="port", required=True, default="22"))

        assert resolve_bindings(template, {"port": ""}) == {"port": "22"}

    def test_missing_required_variable(self):
        template = _template(TemplateVariable(name="domain", required=True))

        with pytest.raises(MissingVariableError) as excinfo:
            resolve_bindings(template, {"other": "x"})

        assert excinfo.value.name == "domain"
        assert str(excinfo.value) == "Missing required variable: domain"
        assert isinstance(excinfo.value, TemplateError)

    def test_optional_variable_without_value_is_empty(self):
        template = _template(TemplateVariable(name="extra"))

        assert resolve_bindings(template) == {"extra": ""}

    def test_undeclared_bindings_pass_through(self):
        template = _template(TemplateVariable(name="port", default="22"))

        assert resolve_bindings(template, {"host": "a"}) == {"host": "a", "port": "22"}

    def test_select_value_must_be_an_option(self):
        template = _template(
            TemplateVariable(name="env", type=VariableType.SELECT, options=("dev", "prod"))
        )

        assert resolve_bindings(template, {"env": "prod"})["env"] == "prod"
        with pytest.raises(InvalidOptionError) as excinfo:
            resolve_bindings(template, {"env": "qa"})
        assert excinfo.value.options == ["dev", "prod"]

    @pytest.mark.parametrize("value", ["8080", "-1", "2.5", "1e3"])
    def test_number_accepts_numeric_text(self, value):
        template = _template(TemplateVariable(name="port", type=VariableType.NUMBER))

        assert resolve_bindings(template, {"port": value})["port"] == value

    def test_number_rejects_text(self):
        template = _template(TemplateVariable(name="port", type=VariableType.NUMBER))

        with pytest.raises(InvalidTypeError) as excinfo:
            resolve_bindings(template, {"port": "http"})
        assert excinfo.value.expected == "number"

    @pytest.mark.parametrize("value", ["nan", "inf", "-Infinity"])
    def test_number_rejects_non_finite(self, value):
        template = _template(TemplateVariable(name="port", type=VariableType.NUMBER))

        with pytest.raises(InvalidTypeError):
            resolve_bindings(template, {"port": value})

    def test_number_is_stripped(self):
        template = _template(
            TemplateVariable(name="port", type=VariableType.NUMBER), commands=("listen {port};",)
        )

        assert expand_commands(template, {"port": " 8080\n"}) == ["listen 8080;"]

    @pytest.mark.parametrize(
        "value, expected",
        [("yes", "true"), ("ON", "true"), ("1", "true"), (True, "true"), ("off", "false"), ("0", "false"), (False, "false")],
    )
    def test_boolean_normalized(self, value, expected):
        template = _template(TemplateVariable(name="tls", type=VariableType.BOOLEAN))

        assert resolve_bindings(template, {"tls": value})["tls"] == expected

    def test_boolean_rejects_other_text(self):
        template = _template(TemplateVariable(name="tls", type=VariableType.BOOLEAN))

        with pytest.raises(InvalidTypeError):
            resolve_bindings(template, {"tls": "maybe"})

    def test_non_string_values_stringified(self):
        template = _template()

        assert resolve_bindings(template, {"port": 8080, "debug": False}) == {
            "port": "8080",
            "debug": "false",
        }


class TestExpansion:
    """Test placeholder substitution."""

    def test_expand_commands(self):
        template = _template(TemplateVariable(name="port", default="22"))

        assert expand_commands(template, {"host": "a", "port": 8080}) == ["connect a:8080"]

    def test_re_expansion_is_a_no_op(self):
        template = _template()
        expanded = expand_commands(template, {"host": "a", "port": "8080"})

        assert substitute(expanded[0], {"host": "b", "port": "1"}) == "connect a:8080"

    def test_unknown_placeholders_left_literal(self):
        template = _template(commands=("echo {known} {unknown}",))

        assert expand_commands(template, {"known": "x"}) == ["echo x {unknown}"]

    def test_substituted_values_not_rescanned(self):
        assert substitute("{a}", {"a": "{b}", "b": "nope"}) == "{b}"

    def test_non_placeholder_braces_untouched(self):
        text = "server {\n  listen {port};\n}\n${HOME} {1} { spaced }"

        assert substitute(text, {"port": "80"}) == "server {\n  listen 80;\n}\n${HOME} {1} { spaced }"

    def test_render_config(self):
        template = _template(
            TemplateVariable(name="domain", required=True),
            config="server_name {domain};",
        )

        assert render_config(template, {"domain": "a.com"}) == "server_name a.com;"

    def test_render_config_validates(self):
        template = _template(TemplateVariable(name="domain", required=True), config="{domain}")

        with pytest.raises(MissingVariableError):
            render_config(template, {})

    def test_placeholders(self):
        assert placeholders("cp {src} {dst} {src} {9x}") == {"src", "dst"}
