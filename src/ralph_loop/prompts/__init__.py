"""Prompt catalog.

Every prompt the loop sends to an agent lives in ``templates.yaml`` next to
this module and is rendered by :class:`PromptCatalog`. A repository can
override individual templates with ``ralph/prompts.yaml``.
"""

from ralph_loop.prompts.catalog import PromptCatalog

__all__ = ["PromptCatalog"]
