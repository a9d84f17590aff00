"""Loop configuration.

Three layers are merged, later ones winning: built-in defaults, the
repository's ``ralph.config.json`` (or the file given with ``--config``),
and command-line flags. The config file may use ``snake_case`` or the
``camelCase`` keys written by older versions of the loop.
"""

from __future__ import annotations

import json
import logging
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_snake

from ralph_loop.schemas import AgentBackend, StepName

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "ralph.config.json"
AGENT_ROLES = ("backlog", "plan", "implement", "review")

# Planning-style steps get the stronger model, execution steps the faster one.
DEFAULT_MODELS: dict[AgentBackend, dict[str, str]] = {
    AgentBackend.CLAUDE: {"plan": "opus", "exec": "sonnet"},
    AgentBackend.CODEX: {"plan": "gpt-5-codex", "exec": "gpt-5-codex"},
}
_ROLE_KIND = {"backlog": "plan", "plan": "plan", "implement": "exec", "review": "exec"}


class ConfigError(ValueError):
    """Raised for unreadable or invalid configuration."""


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AgentStepConfig(_ConfigModel):
    backend: AgentBackend = AgentBackend.CLAUDE
    model: str = ""

    def label(self) -> str:
        return f"{self.backend.value}/{self.model}"


class AgentsConfig(_ConfigModel):
    backlog: AgentStepConfig = Field(default_factory=AgentStepConfig)
    plan: AgentStepConfig = Field(default_factory=AgentStepConfig)
    implement: AgentStepConfig = Field(default_factory=AgentStepConfig)
    review: AgentStepConfig = Field(default_factory=AgentStepConfig)

    def for_step(self, step: StepName) -> AgentStepConfig:
        if step is StepName.BACKLOG_REFILL:
            return self.backlog
        if step is StepName.PLAN:
            return self.plan
        if step is StepName.REVIEW:
            return self.review
        return self.implement

    def backends(self) -> set[AgentBackend]:
        return {self.backlog.backend, self.plan.backend, self.implement.backend, self.review.backend}


class LoopConfig(_ConfigModel):
    """Resolved settings for one run of the loop."""

    repo_dir: Path
    worktree_dir: Path | None = None
    base_branch: str = "main"
    branch_prefix: str = "change"
    # Older prefixes still recognised when reading merge history.
    legacy_branch_prefixes: list[str] = Field(default_factory=list)

    target: int | None = Field(default=None, ge=1)
    parallelism: int = Field(default=1, ge=1)
    max_turns: int = Field(default=100, ge=1)
    min_review_cycles: int = Field(default=1, ge=1)
    max_review_cycles: int = Field(default=3, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    task: str | None = None

    log_file: Path | None = None
    backlog_file: Path | None = None
    triage_file: Path | None = None
    prompts_file: Path | None = None
    plan_doc_path: str = "thoughts/plans/active/ralph-improvement.md"
    link_paths: list[str] = Field(default_factory=lambda: ["node_modules"])

    validate_command: str = "npm run validate"
    validate_timeout_seconds: int = Field(default=1800, ge=0)
    integration: Literal["local", "pull_request"] = "local"
    cooldown_seconds: float = Field(default=2.0, ge=0)
    step_timeout_seconds: int = Field(default=900, ge=0)
    verbose: bool = False

    claude_binary: str = "claude"
    codex_binary: str = "codex"
    agents: AgentsConfig = Field(default_factory=AgentsConfig)

    match_threshold: float = Field(default=0.6, gt=0, le=1)
    match_min_shared_tokens: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _resolve_paths(self) -> LoopConfig:
        if self.min_review_cycles > self.max_review_cycles:
            raise ValueError(
                f"min_review_cycles ({self.min_review_cycles}) exceeds "
                f"max_review_cycles ({self.max_review_cycles})"
            )
        if not self.branch_prefix or any(ch.isspace() for ch in self.branch_prefix):
            raise ValueError(f"invalid branch prefix {self.branch_prefix!r}")
        repo = self.repo_dir.expanduser().resolve()
        self.repo_dir = repo

        def under_repo(value: Path | None, default: Path) -> Path:
            if value is None:
                return default
            value = value.expanduser()
            return value if value.is_absolute() else repo / value

        self.worktree_dir = under_repo(
            self.worktree_dir, Path(tempfile.gettempdir()) / f"{repo.name}-ralph-worktrees"
        )
        self.log_file = under_repo(self.log_file, repo / "ralph-loop.jsonl")
        self.backlog_file = under_repo(self.backlog_file, repo / "ralph" / "backlog.md")
        self.triage_file = under_repo(self.triage_file, repo / "ralph" / "triage.md")
        self.prompts_file = under_repo(self.prompts_file, repo / "ralph" / "prompts.yaml")
        if self.task:
            # The same explicit task in several workers would only collide.
            self.parallelism = 1
        return self

    @property
    def branch_prefixes(self) -> list[str]:
        return [self.branch_prefix, *(p for p in self.legacy_branch_prefixes if p != self.branch_prefix)]

    @property
    def managed_paths(self) -> list[str]:
        """Repo-relative task files that only the main checkout may change."""
        paths = []
        for path in (self.backlog_file, self.triage_file):
            if path is None:
                continue
            try:
                paths.append(path.resolve().relative_to(self.repo_dir).as_posix())
            except ValueError:
                continue
        return paths

    def target_label(self) -> str:
        return f"{self.target} improvements" if self.target is not None else "until backlog empty"


# ── Loading ───────────────────────────────────────────────────────


def infer_backend(model: str) -> AgentBackend:
    """Guess the backend from a model name."""
    lowered = model.lower()
    if "codex" in lowered or "gpt" in lowered:
        return AgentBackend.CODEX
    return AgentBackend.CLAUDE


def _parse_backend(value: Any, source: str) -> AgentBackend | None:
    if value is None or value == "":
        return None
    try:
        return AgentBackend(str(value).strip().lower())
    except ValueError:
        known = ", ".join(b.value for b in AgentBackend)
        raise ConfigError(f"Unknown agent backend {value!r} in {source} (expected one of: {known})") from None


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Read ``ralph.config.json``; a directory means the file inside it.

    A missing file yields ``{}``; unreadable or non-object JSON raises
    :class:`ConfigError`.
    """
    target = Path(path)
    if target.is_dir():
        target = target / CONFIG_FILENAME
    if not target.exists():
        return {}
    try:
        data = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read {target}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{target} must contain a JSON object")
    logger.debug("Loaded config file %s", target)
    return data


def resolve_agents(
    file_data: Mapping[str, Any],
    *,
    agent: str | None = None,
    step_agents: Mapping[str, str | None] | None = None,
    step_models: Mapping[str, str | None] | None = None,
) -> AgentsConfig:
    """Pick backend and model for each role.

    Backend: CLI step flag, CLI ``--agent``, file step entry, file ``agent``,
    then inferred from the model name, then claude. Model: CLI step flag,
    file step entry, then the backend's default for the role.
    """
    step_agents = step_agents or {}
    step_models = step_models or {}
    file_agents = file_data.get("agents") or {}
    if not isinstance(file_agents, dict):
        raise ConfigError("'agents' in the config file must be an object")
    file_global = _parse_backend(file_data.get("agent"), "config file")
    cli_global = _parse_backend(agent, "--agent")

    resolved: dict[str, AgentStepConfig] = {}
    for role in AGENT_ROLES:
        entry = file_agents.get(role) or {}
        if not isinstance(entry, dict):
            raise ConfigError(f"agents.{role} in the config file must be an object")
        backend = (
            _parse_backend(step_agents.get(role), f"--{role}-agent")
            or cli_global
            or _parse_backend(entry.get("backend"), f"agents.{role}")
            or file_global
        )
        model = step_models.get(role) or entry.get("model") or ""
        if backend is None:
            backend = infer_backend(model) if model else AgentBackend.CLAUDE
        resolved[role] = AgentStepConfig(
            backend=backend, model=model or DEFAULT_MODELS[backend][_ROLE_KIND[role]]
        )
    return AgentsConfig(**resolved)


def load_config(
    repo_dir: str | Path,
    *,
    config_path: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    agent: str | None = None,
    step_agents: Mapping[str, str | None] | None = None,
    step_models: Mapping[str, str | None] | None = None,
) -> LoopConfig:
    """Build the effective :class:`LoopConfig`.

    *overrides* holds CLI values keyed by field name; ``None`` values mean
    "not given" and leave lower layers in place.
    """
    repo = Path(repo_dir).expanduser().resolve()
    file_data = load_config_file(config_path if config_path else repo)

    merged: dict[str, Any] = {
        to_snake(k): v for k, v in file_data.items() if to_snake(k) not in {"agent", "agents", "repo_dir"}
    }
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    merged["repo_dir"] = repo
    merged["agents"] = resolve_agents(
        file_data, agent=agent, step_agents=step_agents, step_models=step_models
    )
    try:
        return LoopConfig.model_validate(merged)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc
