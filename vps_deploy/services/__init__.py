"""
VPS Deploy Services

Service layer for template lookup and other business logic.
"""

from .templates import TemplateRegistry  # noqa: F401

__all__ = [
    "TemplateRegistry",
]
