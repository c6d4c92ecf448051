"""
Template Registry Service

Lookup and search over the deployment templates known to the orchestrator.
"""

from __future__ import annotations

from typing import Iterable

import structlog

from ..core.exceptions import TemplateError, TemplateNotFoundError
from ..models.template import DeploymentTemplate


class TemplateRegistry:
    """In-memory catalogue of deployment templates keyed by id."""

    def __init__(self, templates: Iterable[DeploymentTemplate] = ()):
        self.logger = structlog.get_logger()
        self._templates: dict[str, DeploymentTemplate] = {}
        for template in templates:
            self.add(template)

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def add(self, template: DeploymentTemplate) -> None:
        """Register a template.

        Raises:
            TemplateError: A template with the same id is already registered
        """
        if template.id in self._templates:
            raise TemplateError(f"Template already registered: {template.id}")
        self._templates[template.id] = template
        self.logger.debug(
            "Registered deployment template",
            template_id=template.id,
            category=template.category,
            commands=len(template.commands),
        )

    def remove(self, template_id: str) -> DeploymentTemplate:
        try:
            template = self._templates.pop(template_id)
        except KeyError:
            raise TemplateNotFoundError(f"Template not found: {template_id}") from None
        self.logger.debug("Removed deployment template", template_id=template_id)
        return template

    def get(self, template_id: str) -> DeploymentTemplate:
        """Get a template by id or raise :class:`TemplateNotFoundError`."""
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFoundError(f"Template not found: {template_id}") from None

    def list(self) -> list[DeploymentTemplate]:
        return sorted(self._templates.values(), key=lambda t: (t.category, t.name))

    def categories(self) -> list[str]:
        return sorted({template.category for template in self._templates.values()})

    def by_category(self, category: str) -> list[DeploymentTemplate]:
        return [template for template in self.list() if template.category == category]

    def search(self, query: str) -> list[DeploymentTemplate]:
        """Case-insensitive match against name, description and tags.

        An empty query matches every template.
        """
        needle = query.strip().lower()
        if not needle:
            return self.list()
        return [
            template
            for template in self.list()
            if needle in template.name.lower()
            or needle in template.description.lower()
            or any(needle in tag.lower() for tag in template.tags)
        ]
