"""Tests for the YAML prompt catalog."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralph_loop.prompts import PromptCatalog
from ralph_loop.prompts.catalog import truncate_findings

EXPECTED_TEMPLATES = {
    "backlog_refill",
    "task_plan",
    "ideation_plan",
    "implement",
    "review",
    "fix",
    "validation_findings",
}


def test_builtin_templates_are_available() -> None:
    assert EXPECTED_TEMPLATES <= set(PromptCatalog().names())


def test_render_fills_placeholders() -> None:
    prompt = PromptCatalog().render("task_plan", task="Add retries", plan_doc="plans/p.md")
    assert "Add retries" in prompt
    assert "plans/p.md" in prompt
    assert "PLAN:" in prompt


def test_review_prompt_names_both_markers() -> None:
    prompt = PromptCatalog().render(
        "review",
        branch="change-001",
        cycle=1,
        max_cycles=3,
        review_target="",
        base_branch="main",
        plan_doc="p.md",
        validate_command="make check",
    )
    assert "REVIEW_PASSED" in prompt
    assert "REVIEW_FAILED" in prompt
    assert "git diff main...HEAD" in prompt


def test_overrides_replace_single_templates(tmp_path: Path) -> None:
    override = tmp_path / "prompts.yaml"
    override.write_text("fix: 'Just fix: {findings}'\n", encoding="utf-8")
    catalog = PromptCatalog(override)

    assert catalog.render("fix", findings="typo") == "Just fix: typo"
    assert "implement" in catalog.names()


def test_broken_override_is_ignored(tmp_path: Path) -> None:
    override = tmp_path / "prompts.yaml"
    override.write_text("- not\n- a mapping\n", encoding="utf-8")
    assert EXPECTED_TEMPLATES <= set(PromptCatalog(override).names())


def test_unknown_template_lists_available() -> None:
    with pytest.raises(KeyError, match="Available"):
        PromptCatalog().template("nope")


def test_truncate_findings() -> None:
    assert truncate_findings("short", limit=10) == "short"
    assert truncate_findings("x" * 20, limit=10) == "x" * 10 + "\n... (truncated)"
