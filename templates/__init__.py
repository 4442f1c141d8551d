"""
Prompt Template Module.

Usage:
    from templates import TemplateSelector

    selection = await TemplateSelector().select(profile, options)
    print(selection.template.key, selection.score)
"""

from .repository import BUILTIN_TEMPLATES, InMemoryTemplateRepository, TemplateRepository
from .selector import TemplateSelection, TemplateSelector

__all__ = [
    "BUILTIN_TEMPLATES",
    "InMemoryTemplateRepository",
    "TemplateRepository",
    "TemplateSelection",
    "TemplateSelector",
]
