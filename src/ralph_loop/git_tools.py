"""Git helper utilities for worktrees, branches, commits, and merges."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_BASE_BRANCH = "main"


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 60,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitError(f"`git {' '.join(args)}` could not run: {exc}") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def current_branch(repo: str | Path) -> str:
    """Return the name of the current branch."""
    return _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=Path(repo)).stdout.strip()


def branch_exists(repo: str | Path, branch: str) -> bool:
    """Return True when a local branch named *branch* exists."""
    result = _run_git(
        "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=Path(repo), check=False
    )
    return result.returncode == 0


def commits_ahead(
    repo: str | Path, ref: str, base: str = DEFAULT_BASE_BRANCH
) -> int:
    """Return how many commits *ref* carries beyond *base* (0 on any error)."""
    try:
        out = _run_git("rev-list", "--count", f"{base}..{ref}", cwd=Path(repo)).stdout.strip()
    except GitError as exc:
        logger.debug("commits_ahead(%s..%s) failed: %s", base, ref, exc)
        return 0
    try:
        return int(out)
    except ValueError:
        return 0


def has_new_commits(cwd: str | Path, base: str = DEFAULT_BASE_BRANCH) -> bool:
    """Return True when HEAD in *cwd* has commits beyond *base*."""
    return commits_ahead(cwd, "HEAD", base) > 0


def count_merged_improvements(
    repo: str | Path,
    prefixes: Sequence[str],
    base: str = DEFAULT_BASE_BRANCH,
) -> int:
    """Count merge commits on *base* whose message names a ``<prefix>-<digits>`` branch.

    Only the first-parent chain is read, so syncs of *base* into a branch are
    not counted once that branch is merged.
    """
    cwd = Path(repo)
    seen: set[str] = set()
    for prefix in prefixes:
        result = _run_git(
            "log",
            "--format=%H",
            "--merges",
            "--first-parent",
            "--extended-regexp",
            f"--grep={re.escape(prefix)}-[0-9]+",
            base,
            cwd=cwd,
            check=False,
        )
        if result.returncode != 0:
            logger.debug("Could not count merges for %s: %s", prefix, result.stderr.strip())
            continue
        seen.update(line for line in result.stdout.split() if line)
    return len(seen)


def merge_commit_messages(repo: str | Path, base: str = DEFAULT_BASE_BRANCH) -> list[str]:
    """Return the full message (subject and body) of every merge commit on *base*."""
    result = _run_git("log", "--merges", "--first-parent", "--format=%B%x00", base, cwd=Path(repo), check=False)
    if result.returncode != 0:
        return []
    return [msg.strip() for msg in result.stdout.split("\x00") if msg.strip()]


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def ensure_git_identity(repo: str | Path) -> None:
    """Ensure the repo has a git identity configured for commits."""
    cwd = Path(repo)
    for key, fallback in [
        ("user.name", "ralph-loop"),
        ("user.email", "ralph-loop@localhost"),
    ]:
        result = _run_git("config", key, cwd=cwd, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            _run_git("config", key, fallback, cwd=cwd)
            logger.info("Set %s = %s in %s", key, fallback, cwd)


def commit_all(cwd: str | Path, message: str) -> bool:
    """Stage everything and commit.

    Returns False when nothing is staged or the commit fails; hooks are
    skipped since validation runs as its own step.
    """
    path = Path(cwd)
    try:
        _run_git("add", "-A", cwd=path)
    except GitError as exc:
        logger.warning("git add failed in %s: %s", path, exc)
        return False
    staged = _run_git("diff", "--cached", "--quiet", cwd=path, check=False)
    if staged.returncode == 0:
        return False
    try:
        _run_git("commit", "--no-verify", "-m", message, cwd=path)
    except GitError as exc:
        logger.warning("git commit failed in %s: %s", path, exc)
        return False
    return True


def add_worktree(
    repo: str | Path,
    path: str | Path,
    branch: str,
    *,
    new_branch: bool,
    base: str = DEFAULT_BASE_BRANCH,
) -> None:
    """Attach a worktree at *path*, creating *branch* from *base* when *new_branch*."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if new_branch:
        _run_git("worktree", "add", "-b", branch, str(target), base, cwd=Path(repo))
    else:
        _run_git("worktree", "add", str(target), branch, cwd=Path(repo))
    logger.info("Added worktree %s on %s", target, branch)


def remove_worktree(repo: str | Path, path: str | Path) -> None:
    """Force-remove the worktree at *path*; a missing worktree is not an error."""
    result = _run_git("worktree", "remove", "--force", str(path), cwd=Path(repo), check=False)
    if result.returncode != 0:
        logger.debug("worktree remove %s: %s", path, result.stderr.strip())


def delete_branch(repo: str | Path, branch: str) -> None:
    """Force-delete a local branch; a missing branch is not an error."""
    result = _run_git("branch", "-D", branch, cwd=Path(repo), check=False)
    if result.returncode != 0:
        logger.debug("branch -D %s: %s", branch, result.stderr.strip())


def prune_worktrees(repo: str | Path) -> None:
    _run_git("worktree", "prune", cwd=Path(repo), check=False)


def _abort_merge(cwd: Path) -> None:
    result = _run_git("merge", "--abort", cwd=cwd, check=False)
    if result.returncode != 0:
        logger.debug("merge --abort in %s: %s", cwd, result.stderr.strip())


def sync_with_main(worktree: str | Path, base: str = DEFAULT_BASE_BRANCH) -> bool:
    """Merge the latest *base* into the branch checked out in *worktree*.

    A conflicting merge is aborted, leaving the branch as it was.
    """
    cwd = Path(worktree)
    result = _run_git("merge", "--no-edit", base, cwd=cwd, check=False, timeout=120)
    if result.returncode == 0:
        return True
    logger.warning("Syncing %s with %s failed: %s", cwd, base, result.stderr.strip() or result.stdout.strip())
    _abort_merge(cwd)
    return False


def merge_branch_into(
    repo: str | Path,
    branch: str,
    message: str,
    base: str = DEFAULT_BASE_BRANCH,
) -> bool:
    """Merge *branch* into *base* with a merge commit, in the main checkout at *repo*."""
    cwd = Path(repo)
    try:
        checked_out = current_branch(cwd)
    except GitError as exc:
        logger.error("Cannot read current branch of %s: %s", cwd, exc)
        return False
    if checked_out != base:
        logger.error("Refusing to merge %s: %s has %s checked out, not %s", branch, cwd, checked_out, base)
        return False
    result = _run_git("merge", "--no-ff", "-m", message, branch, cwd=cwd, check=False, timeout=120)
    if result.returncode == 0:
        return True
    logger.warning("Merging %s into %s failed: %s", branch, base, result.stderr.strip() or result.stdout.strip())
    _abort_merge(cwd)
    return False


def push_branch(cwd: str | Path, branch: str, remote: str = "origin") -> bool:
    """Push *branch* and set its upstream; returns False on failure."""
    result = _run_git("push", "--set-upstream", remote, branch, cwd=Path(cwd), check=False, timeout=300)
    if result.returncode != 0:
        logger.warning("Pushing %s failed: %s", branch, result.stderr.strip())
        return False
    return True


def restore_paths(
    cwd: str | Path,
    paths: Sequence[str],
    base: str = DEFAULT_BASE_BRANCH,
) -> None:
    """Reset *paths* in the worktree at *cwd* to their content on *base*.

    Paths that do not exist on *base* are removed from the worktree.
    """
    root = Path(cwd)
    for rel in paths:
        on_base = _run_git("cat-file", "-e", f"{base}:{rel}", cwd=root, check=False).returncode == 0
        if on_base:
            _run_git("checkout", base, "--", rel, cwd=root, check=False)
            continue
        _run_git("rm", "--cached", "--quiet", "--ignore-unmatch", "--", rel, cwd=root, check=False)
        (root / rel).unlink(missing_ok=True)
