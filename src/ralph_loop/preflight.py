"""Readiness checks run before the loop starts and by ``ralph-loop doctor``."""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.config import LoopConfig
from ralph_loop.schemas import AgentBackend
from ralph_loop.validation import parse_command

_PLACEHOLDER_SECRET_VALUES = frozenset({"changeme", "your-api-key", "sk-...", "xxx", "todo"})


class DependencyMissingError(RuntimeError):
    """Raised when a required tool or credential is unavailable."""

    def __init__(self, failures: list[str]) -> None:
        super().__init__("; ".join(failures))
        self.failures = failures


@dataclass(frozen=True)
class PreflightCheck:
    """A single readiness check result."""

    key: str
    label: str
    status: str  # "pass" | "warn" | "fail"
    detail: str
    hint: str = ""


@dataclass(frozen=True)
class PreflightReport:
    repo_path: str
    checks: list[PreflightCheck]

    @property
    def summary(self) -> dict[str, int]:
        counts = {"pass": 0, "warn": 0, "fail": 0}
        for check in self.checks:
            if check.status in counts:
                counts[check.status] += 1
        return counts

    @property
    def ready(self) -> bool:
        return self.summary["fail"] == 0

    def failure_messages(self) -> list[str]:
        return [
            f"{check.label}: {check.hint or check.detail}"
            for check in self.checks
            if check.status == "fail"
        ]


def binary_exists(binary: str) -> bool:
    """Return ``True`` when an executable exists for *binary*."""
    binary = os.path.expandvars(os.path.expanduser(str(binary or "").strip()))
    if not binary:
        return False
    candidate = Path(binary)
    if candidate.is_file():
        return os.access(candidate, os.X_OK)
    return shutil.which(binary) is not None


def _env_secret_present(var_names: tuple[str, ...]) -> bool:
    for name in var_names:
        value = (os.getenv(name) or "").strip().strip('"').strip("'")
        if value and value.lower() not in _PLACEHOLDER_SECRET_VALUES and not value.endswith("..."):
            return True
    return False


def has_claude_auth() -> bool:
    """Detect Claude auth in env vars or local auth files."""
    if _env_secret_present(("ANTHROPIC_API_KEY", "CLAUDE_API_KEY")):
        return True
    home = Path.home()
    return any(
        path.exists()
        for path in (
            home / ".claude.json",
            home / ".claude" / "auth.json",
            home / ".config" / "claude" / "auth.json",
        )
    )


def has_codex_auth() -> bool:
    """Detect Codex/OpenAI auth in env vars or local auth files."""
    if _env_secret_present(("CODEX_API_KEY", "OPENAI_API_KEY")):
        return True
    home = Path.home()
    return any(
        path.exists()
        for path in (home / ".codex" / "auth.json", home / ".config" / "codex" / "auth.json")
    )


def _gh_authenticated(repo: Path) -> bool:
    try:
        result = subprocess.run(
            ["gh", "auth", "status"], cwd=repo, capture_output=True, text=True, timeout=30
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


def _check(key: str, label: str, ok: bool, detail: str, hint: str, *, warn_only: bool = False) -> PreflightCheck:
    status = "pass" if ok else ("warn" if warn_only else "fail")
    return PreflightCheck(key=key, label=label, status=status, detail=detail, hint="" if ok else hint)


def build_preflight_report(config: LoopConfig) -> PreflightReport:
    """Check the tools and credentials *config* needs."""
    repo = config.repo_dir
    checks = [
        _check("git", "git available", binary_exists("git"), "git on PATH", "Install git."),
        _check(
            "repo",
            "Git repository detected",
            (repo / ".git").exists(),
            f"Repository: {repo}",
            "Point --repo at a git checkout.",
        ),
    ]

    backends = config.agents.backends()
    if AgentBackend.CLAUDE in backends:
        checks.append(
            _check(
                "claude_binary",
                "Claude Code CLI available",
                binary_exists(config.claude_binary),
                f"Configured binary: {config.claude_binary}",
                "Install Claude Code or set claude_binary.",
            )
        )
        checks.append(
            _check(
                "claude_auth",
                "Claude authentication detected",
                has_claude_auth(),
                "ANTHROPIC_API_KEY or a Claude auth file",
                "Set ANTHROPIC_API_KEY or log in with the Claude CLI.",
                warn_only=True,
            )
        )
    if AgentBackend.CODEX in backends:
        checks.append(
            _check(
                "codex_binary",
                "Codex CLI available",
                binary_exists(config.codex_binary),
                f"Configured binary: {config.codex_binary}",
                "Install Codex CLI or set codex_binary.",
            )
        )
        checks.append(
            _check(
                "codex_auth",
                "Codex authentication detected",
                has_codex_auth(),
                "CODEX_API_KEY / OPENAI_API_KEY or a Codex auth file",
                "Set OPENAI_API_KEY or run 'codex login'.",
                warn_only=True,
            )
        )

    if config.integration == "pull_request":
        gh_found = binary_exists("gh")
        checks.append(_check("gh", "GitHub CLI available", gh_found, "gh on PATH", "Install the GitHub CLI (gh)."))
        if gh_found:
            checks.append(
                _check(
                    "gh_auth",
                    "GitHub CLI authenticated",
                    _gh_authenticated(repo),
                    "gh auth status",
                    "Run 'gh auth login'.",
                )
            )

    argv = parse_command(config.validate_command) or []
    checks.append(
        _check(
            "validate",
            "Validation command available",
            bool(argv) and binary_exists(argv[0]),
            f"Command: {config.validate_command}",
            "Install the tool it needs or change validate_command.",
            warn_only=True,
        )
    )
    return PreflightReport(repo_path=str(repo), checks=checks)


def check_dependencies(config: LoopConfig) -> PreflightReport:
    """Raise :class:`DependencyMissingError` unless every required check passes."""
    report = build_preflight_report(config)
    if not report.ready:
        raise DependencyMissingError(report.failure_messages())
    return report
