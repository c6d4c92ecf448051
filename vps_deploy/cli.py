"""
vps-deploy command line interface

List inventory hosts and templates, preview expanded template commands and
run deployments against a host over pooled SSH sessions.
"""

import argparse
import asyncio
import os
import sys
from typing import Sequence

import structlog
from dotenv import load_dotenv

from .core.config_loader import Inventory, default_inventory_path, load_inventory
from .core.exceptions import VPSDeployError
from .core.lifecycle import LifecycleHandle
from .core.logging_config import setup_logging
from .core.orchestrator import DeploymentOrchestrator
from .core.settings import PoolSettings
from .core.ssh_pool import ConnectionPool
from .core.template_engine import placeholders
from .models.deployment import DeploymentEvent
from .models.enums import DeploymentStatus
from .services.templates import TemplateRegistry

logger = structlog.get_logger()


def parse_variables(pairs: Sequence[str]) -> dict[str, str]:
    """Parse repeated ``name=value`` options."""
    variables = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise argparse.ArgumentTypeError(f"Expected name=value, got {pair!r}")
        variables[name.strip()] = value
    return variables


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vps-deploy", description="Deploy to VPS hosts over SSH")
    parser.add_argument(
        "--inventory",
        default=str(default_inventory_path()),
        help="Inventory file with hosts and templates",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "WARNING"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--log-dir", default=os.getenv("LOG_DIR"), help="Directory for vps_deploy.log"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    hosts = subparsers.add_parser("hosts", help="List inventory hosts")
    hosts.add_argument("--enabled", action="store_true", help="Only enabled hosts")

    templates = subparsers.add_parser("templates", help="List deployment templates")
    templates.add_argument("--category", help="Only templates in this category")
    templates.add_argument("--search", help="Match name, description or tags")

    preview = subparsers.add_parser("preview", help="Show expanded template commands")
    preview.add_argument("--template", required=True, help="Template id")
    preview.add_argument("--var", action="append", default=[], metavar="NAME=VALUE")

    deploy = subparsers.add_parser("deploy", help="Run a deployment against a host")
    deploy.add_argument("--host", required=True, help="Inventory host id")
    source = deploy.add_mutually_exclusive_group(required=True)
    source.add_argument("--template", help="Template id")
    source.add_argument(
        "--command", dest="commands", action="append", metavar="COMMAND", help="Custom command"
    )
    deploy.add_argument("--var", action="append", default=[], metavar="NAME=VALUE")

    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        args.variables = parse_variables(getattr(args, "var", []))
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    return args


def _print_hosts(inventory: Inventory, enabled_only: bool = False) -> None:
    hosts = inventory.enabled_hosts() if enabled_only else inventory.hosts.values()
    for host in hosts:
        state = "enabled" if host.enabled else "disabled"
        if not host.has_credential:
            auth = "agent"
        else:
            auth = "key" if host.key_path else "password"
        print(f"{host.id}\t{host.endpoint}\t{host.group}\t{state}\t{auth}")


def _print_templates(registry: TemplateRegistry, category: str | None, search: str | None) -> None:
    templates = registry.by_category(category) if category else registry.list()
    if search:
        matches = {template.id for template in registry.search(search)}
        templates = [template for template in templates if template.id in matches]
    for template in templates:
        print(f"{template.id}\t{template.category}\t{template.name}")


def _print_preview(orchestrator: DeploymentOrchestrator, template_id: str, variables) -> None:
    plan = orchestrator.preview_plan(template_id, variables)
    texts = list(plan.commands)
    for command in plan.commands:
        print(plan.redact(command))
    for _, remote_path, content in plan.uploads:
        texts += [remote_path, content]
        print(f"\n# {remote_path}")
        print(plan.redact(content))
    if plan.service_commands:
        print()
        for command in plan.service_commands:
            print(command)

    unresolved = set().union(*(placeholders(text) for text in texts))
    if unresolved:
        print(f"warning: unresolved placeholders: {', '.join(sorted(unresolved))}", file=sys.stderr)


def _print_event(event: DeploymentEvent) -> None:
    entry = event.entry
    if entry is not None:
        print(f"[{event.progress:4.0%}] {entry.level.value}: {entry.command or entry.message}")
        if entry.output:
            print(entry.output)
    elif event.kind == "terminal":
        print(f"{event.status.value}" + (f": {event.error}" if event.error else ""))


async def _run_deployment(args: argparse.Namespace, inventory: Inventory) -> DeploymentStatus:
    pool = ConnectionPool(PoolSettings())
    orchestrator = DeploymentOrchestrator(pool, TemplateRegistry(inventory.templates))
    lifecycle = LifecycleHandle(pool, orchestrator)
    orchestrator.subscribe(_print_event)

    await lifecycle.start()
    try:
        task = await orchestrator.deploy(
            inventory.get_host(args.host),
            template_id=args.template,
            commands=args.commands,
            variables=args.variables,
        )
    finally:
        await lifecycle.shutdown()
    return task.status


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(log_dir=args.log_dir, log_level=args.log_level)

    try:
        inventory = load_inventory(args.inventory)
        registry = TemplateRegistry(inventory.templates)

        if args.command == "hosts":
            _print_hosts(inventory, args.enabled)
        elif args.command == "templates":
            _print_templates(registry, args.category, args.search)
        elif args.command == "preview":
            orchestrator = DeploymentOrchestrator(ConnectionPool(PoolSettings()), registry)
            _print_preview(orchestrator, args.template, args.variables)
        elif args.command == "deploy":
            status = asyncio.run(_run_deployment(args, inventory))
            return 0 if status is DeploymentStatus.COMPLETED else 1
    except VPSDeployError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130
    return 0
