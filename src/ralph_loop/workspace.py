"""Isolated git worktrees, one per improvement branch.

A workspace is created fresh, or resumed when its branch already carries
commits beyond the base branch. Work that reached a commit is never thrown
away implicitly: ``release`` only destroys workspaces with nothing to lose.
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ralph_loop import git_tools
from ralph_loop.git_tools import GitError

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Handle to a branch-bound worktree.

    ``created`` is False when the worktree could not be set up; callers must
    abort the improvement in that case.
    """

    path: Path
    branch: str
    created: bool = True
    resumed: bool = False
    has_commits: bool = False


class WorkspaceManager:
    """Create, resume and destroy worktrees under ``worktree_dir``."""

    def __init__(
        self,
        repo_dir: str | Path,
        worktree_dir: str | Path,
        *,
        base_branch: str = git_tools.DEFAULT_BASE_BRANCH,
        link_paths: Sequence[str] = (),
    ) -> None:
        self.repo_dir = Path(repo_dir)
        self.worktree_dir = Path(worktree_dir)
        self.base_branch = base_branch
        self.link_paths = tuple(link_paths)
        self._lock = threading.Lock()
        self._active: dict[str, Workspace] = {}

    def path_for(self, branch: str) -> Path:
        return self.worktree_dir / branch

    def _branch_has_work(self, branch: str) -> bool:
        return git_tools.commits_ahead(self.repo_dir, branch, self.base_branch) > 0

    def create(self, branch: str) -> Workspace:
        """Create the worktree for *branch*, resuming prior committed work."""
        path = self.path_for(branch)
        try:
            with self._lock:
                return self._create_locked(branch, path)
        except (GitError, OSError) as exc:
            logger.error("Could not create workspace for %s: %s", branch, exc)
            return Workspace(path=path, branch=branch, created=False)

    def _create_locked(self, branch: str, path: Path) -> Workspace:
        worktree_exists = (path / ".git").exists()
        branch_found = git_tools.branch_exists(self.repo_dir, branch)
        has_work = branch_found and self._branch_has_work(branch)

        if worktree_exists and has_work:
            logger.info("Resuming %s from existing worktree %s", branch, path)
            self._link_shared_paths(path)
            return Workspace(path=path, branch=branch, resumed=True, has_commits=True)

        if worktree_exists or path.exists():
            git_tools.remove_worktree(self.repo_dir, path)
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
        git_tools.prune_worktrees(self.repo_dir)

        if has_work:
            git_tools.add_worktree(self.repo_dir, path, branch, new_branch=False)
            if not path.exists():
                return Workspace(path=path, branch=branch, created=False)
            logger.info("Resuming %s: re-attached worktree at %s", branch, path)
            self._link_shared_paths(path)
            return Workspace(path=path, branch=branch, resumed=True, has_commits=True)

        if branch_found:
            logger.info("Branch %s has no work beyond %s; recreating", branch, self.base_branch)
            git_tools.delete_branch(self.repo_dir, branch)

        git_tools.ensure_git_identity(self.repo_dir)
        git_tools.add_worktree(
            self.repo_dir, path, branch, new_branch=True, base=self.base_branch
        )
        if not path.exists():
            return Workspace(path=path, branch=branch, created=False)
        self._link_shared_paths(path)
        return Workspace(path=path, branch=branch)

    def _link_shared_paths(self, path: Path) -> None:
        linked = []
        for rel in self.link_paths:
            source = self.repo_dir / rel
            target = path / rel
            if not source.exists() or target.exists() or target.is_symlink():
                continue
            try:
                target.symlink_to(source, target_is_directory=source.is_dir())
            except OSError as exc:
                logger.debug("Could not link %s into %s: %s", rel, path, exc)
                continue
            linked.append(rel)
        if linked:
            self._exclude(path, linked)

    def _exclude(self, path: Path, rels: list[str]) -> None:
        """Keep linked paths out of ``git add -A`` in every worktree."""
        result = git_tools._run_git("rev-parse", "--git-path", "info/exclude", cwd=path, check=False)
        if result.returncode != 0:
            return
        exclude = Path(result.stdout.strip())
        if not exclude.is_absolute():
            exclude = path / exclude
        text = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        existing = text.splitlines()
        missing = [f"/{rel}" for rel in rels if f"/{rel}" not in existing]
        if not missing:
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with exclude.open("a", encoding="utf-8") as handle:
            if text and not text.endswith("\n"):
                handle.write("\n")
            handle.write("\n".join(missing) + "\n")

    def cleanup(self, branch: str) -> None:
        """Remove the worktree and delete the branch. Safe to repeat."""
        path = self.path_for(branch)
        with self._lock:
            git_tools.remove_worktree(self.repo_dir, path)
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            git_tools.prune_worktrees(self.repo_dir)
            git_tools.delete_branch(self.repo_dir, branch)
        logger.info("Cleaned up workspace %s", branch)

    def release(self, workspace: Workspace) -> bool:
        """Apply the exit policy; return True when the workspace was destroyed.

        A workspace is destroyed only when its branch has zero commits beyond
        the base branch. Anything else is preserved for resumption.
        """
        if not workspace.created:
            return False
        if self._branch_has_work(workspace.branch):
            logger.info("Workspace preserved at %s", workspace.path)
            return False
        self.cleanup(workspace.branch)
        return True

    @contextmanager
    def lease(self, branch: str) -> Iterator[Workspace]:
        """Hold a workspace for the duration of a block.

        If the block raises (including on interrupt), the exit policy is
        applied before the exception propagates.
        """
        workspace = self.create(branch)
        with self._lock:
            self._active[branch] = workspace
        try:
            yield workspace
        except BaseException:
            self.release(workspace)
            raise
        finally:
            with self._lock:
                self._active.pop(branch, None)

    def active(self) -> list[Workspace]:
        with self._lock:
            return list(self._active.values())

    def release_all(self) -> None:
        """Apply the exit policy to every workspace currently leased."""
        for workspace in self.active():
            try:
                self.release(workspace)
            except GitError as exc:
                logger.warning("Could not release %s: %s", workspace.branch, exc)
