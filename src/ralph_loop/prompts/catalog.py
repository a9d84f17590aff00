"""Load prompt templates from YAML and render them for each step."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"

FINDINGS_MAX_CHARS = 4000


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict when unreadable."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected a mapping of template names", path)
        return {}
    return data


def truncate_findings(text: str, limit: int = FINDINGS_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


class PromptCatalog:
    """Serves the prompt templates, merged with optional overrides.

    Usage::

        catalog = PromptCatalog(Path("ralph/prompts.yaml"))
        prompt = catalog.render("task_plan", task="Add tests", plan_doc="plan.md")
    """

    def __init__(self, override_path: Path | None = None) -> None:
        self._templates: dict[str, str] = {}
        self._load(override_path)

    def _load(self, override_path: Path | None) -> None:
        data = _load_yaml(_BUILTIN_YAML)
        if override_path is not None and override_path.exists():
            overrides = _load_yaml(override_path)
            if overrides:
                data.update(overrides)
                logger.info("Loaded prompt overrides from %s", override_path)
        self._templates = {str(k): str(v) for k, v in data.items() if isinstance(v, str)}

    def names(self) -> list[str]:
        return sorted(self._templates)

    def template(self, name: str) -> str:
        try:
            return self._templates[name]
        except KeyError:
            raise KeyError(f"Unknown prompt template '{name}'. Available: {', '.join(self.names())}") from None

    def render(self, name: str, **values: Any) -> str:
        """Fill template *name* with *values*."""
        return self.template(name).format(**values).strip()
