"""Inventory loading for vps-deploy.

An inventory is a YAML file with a ``hosts`` mapping keyed by host id and a
``templates`` list::

    hosts:
      web-1:
        address: 203.0.113.10
        username: deploy
        key_path: ${HOME}/.ssh/id_ed25519
    templates:
      - id: nginx
        name: Nginx
        commands:
          - apt-get install -y nginx
"""

import os
import re
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from ..models.host import Host
from ..models.template import DeploymentTemplate
from .exceptions import ConfigurationError

logger = structlog.get_logger()

DEFAULT_INVENTORY = "config/inventory.yml"

# Environment variables that may be expanded inside inventory files
ALLOWED_ENV_VARS = frozenset(
    {
        "HOME",
        "USER",
        "XDG_CONFIG_HOME",
        "XDG_DATA_HOME",
        "VPS_DEPLOY_INVENTORY",
        "VPS_DEPLOY_SSH_USER",
        "VPS_DEPLOY_SSH_KEY",
        "SSH_CONFIG_PATH",
    }
)


class Inventory(BaseModel):
    """Hosts and templates loaded from an inventory file."""

    hosts: dict[str, Host] = Field(default_factory=dict)
    templates: list[DeploymentTemplate] = Field(default_factory=list)
    source: str | None = None

    def get_host(self, host_id: str) -> Host:
        try:
            return self.hosts[host_id]
        except KeyError:
            raise ConfigurationError(f"Host not found in inventory: {host_id}") from None

    def enabled_hosts(self) -> list[Host]:
        return [host for host in self.hosts.values() if host.enabled]


def default_inventory_path() -> Path:
    return Path(os.getenv("VPS_DEPLOY_INVENTORY", DEFAULT_INVENTORY))


def load_inventory(path: str | Path | None = None) -> Inventory:
    """Load hosts and templates from a YAML inventory.

    Args:
        path: Inventory file (defaults to VPS_DEPLOY_INVENTORY or config/inventory.yml)

    Raises:
        ConfigurationError: The file is missing, malformed or fails validation
    """
    load_dotenv()
    inventory_path = Path(path) if path is not None else default_inventory_path()

    try:
        content = inventory_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read inventory {inventory_path}: {e}") from e

    try:
        loaded = yaml.safe_load(_expand_env(content))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse inventory {inventory_path}: {e}") from e

    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Inventory {inventory_path} must be a mapping")

    try:
        inventory = Inventory(
            hosts=_parse_hosts(loaded.get("hosts") or {}),
            templates=loaded.get("templates") or [],
            source=str(inventory_path),
        )
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid inventory {inventory_path}: {e}") from e

    logger.info(
        "Inventory loaded",
        path=str(inventory_path),
        hosts=len(inventory.hosts),
        templates=len(inventory.templates),
    )
    return inventory


def _parse_hosts(hosts: Any) -> dict[str, Host]:
    if not isinstance(hosts, dict):
        raise TypeError("hosts must be a mapping keyed by host id")
    parsed = {}
    for host_id, host_data in hosts.items():
        data = dict(host_data or {})
        data.setdefault("id", str(host_id))
        if data["id"] != str(host_id):
            raise TypeError(f"host {host_id!r} declares a different id {data['id']!r}")
        parsed[str(host_id)] = Host(**data)
    return parsed


def _expand_env(content: str) -> str:
    """Expand ${VAR} references whose names are allowlisted."""

    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        if var_name not in ALLOWED_ENV_VARS:
            logger.warning(
                "Environment variable not in allowlist, skipping expansion",
                variable=var_name,
            )
            return match.group(0)
        return os.getenv(var_name, match.group(0))

    return re.sub(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}", replace_var, content)
