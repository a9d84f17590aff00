"""Tests for branch-bound worktrees and their exit policy."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import git

from ralph_loop import git_tools
from ralph_loop.workspace import WorkspaceManager

pytestmark = pytest.mark.integration


@pytest.fixture
def manager(git_repo: Path, tmp_path: Path) -> WorkspaceManager:
    (git_repo / "node_modules").mkdir()
    return WorkspaceManager(git_repo, tmp_path / "worktrees", base_branch="main", link_paths=["node_modules"])


def _commit_in(path: Path, name: str) -> None:
    (path / name).write_text("work\n", encoding="utf-8")
    git(path, "add", "-A")
    git(path, "commit", "-qm", f"add {name}")


def test_fresh_workspace_branches_from_base(manager: WorkspaceManager) -> None:
    ws = manager.create("change-001")

    assert ws.created and not ws.resumed
    assert ws.path == manager.path_for("change-001")
    assert git_tools.current_branch(ws.path) == "change-001"
    assert (ws.path / "node_modules").is_symlink()


def test_existing_worktree_with_commits_is_resumed(manager: WorkspaceManager) -> None:
    ws = manager.create("change-001")
    _commit_in(ws.path, "feature.txt")

    again = manager.create("change-001")

    assert again.resumed and again.has_commits
    assert (again.path / "feature.txt").exists()


def test_branch_with_commits_is_reattached_after_worktree_loss(manager: WorkspaceManager, git_repo: Path) -> None:
    ws = manager.create("change-002")
    _commit_in(ws.path, "feature.txt")
    git_tools.remove_worktree(git_repo, ws.path)
    assert not ws.path.exists()

    again = manager.create("change-002")

    assert again.resumed
    assert (again.path / "feature.txt").exists()


def test_stale_branch_without_commits_is_recreated(manager: WorkspaceManager, git_repo: Path) -> None:
    git(git_repo, "branch", "change-003")
    ws = manager.create("change-003")
    assert ws.created and not ws.resumed


def test_release_destroys_only_workspaces_without_commits(manager: WorkspaceManager, git_repo: Path) -> None:
    empty = manager.create("change-004")
    busy = manager.create("change-005")
    _commit_in(busy.path, "feature.txt")

    assert manager.release(empty) is True
    assert not empty.path.exists()
    assert not git_tools.branch_exists(git_repo, "change-004")

    assert manager.release(busy) is False
    assert busy.path.exists()


def test_lease_applies_exit_policy_on_exception(manager: WorkspaceManager, git_repo: Path) -> None:
    with pytest.raises(KeyboardInterrupt):
        with manager.lease("change-006") as ws:
            assert manager.active() == [ws]
            raise KeyboardInterrupt

    assert manager.active() == []
    assert not ws.path.exists()
    assert not git_tools.branch_exists(git_repo, "change-006")


def test_cleanup_is_idempotent(manager: WorkspaceManager, git_repo: Path) -> None:
    ws = manager.create("change-007")
    manager.cleanup("change-007")
    manager.cleanup("change-007")
    assert not ws.path.exists()
    assert not git_tools.branch_exists(git_repo, "change-007")


def test_unavailable_workspace_is_reported(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path / "not-a-repo", tmp_path / "worktrees")
    ws = manager.create("change-001")
    assert ws.created is False
    assert manager.release(ws) is False


def test_linked_paths_are_never_committed(manager: WorkspaceManager) -> None:
    ws = manager.create("change-008")
    assert (ws.path / "node_modules").is_symlink()
    assert git(ws.path, "status", "--porcelain") == ""
    assert git_tools.commit_all(ws.path, "nothing to see") is False
