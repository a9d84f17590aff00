"""Ways a finished branch is integrated into the base branch."""

from __future__ import annotations

import logging
from pathlib import Path

from ralph_loop import git_tools, review_requests
from ralph_loop.merge_queue import Integrator, MergeJob

logger = logging.getLogger(__name__)


def merge_message(branch: str, task: str | None) -> str:
    """Merge commit message; the ``Task:`` trailer lets reconciliation recover the task."""
    message = f"Merge branch '{branch}'"
    if task:
        message += f"\n\nTask: {' '.join(task.split())}"
    return message


class LocalIntegrator(Integrator):
    """Merge into the base branch checked out in the main repository."""

    def __init__(self, repo_dir: str | Path, base_branch: str = git_tools.DEFAULT_BASE_BRANCH) -> None:
        self.repo_dir = Path(repo_dir)
        self.base_branch = base_branch

    def prepare(self, job: MergeJob) -> bool:
        return git_tools.sync_with_main(job.workspace.path, self.base_branch)

    def merge(self, job: MergeJob) -> bool:
        return git_tools.merge_branch_into(
            self.repo_dir, job.branch, merge_message(job.branch, job.task), self.base_branch
        )


class PullRequestIntegrator(Integrator):
    """Squash-merge the branch's GitHub pull request."""

    def __init__(self, repo_dir: str | Path, base_branch: str = git_tools.DEFAULT_BASE_BRANCH) -> None:
        self.repo_dir = Path(repo_dir)
        self.base_branch = base_branch

    def prepare(self, job: MergeJob) -> bool:
        if job.review_request is None:
            logger.error("No pull request recorded for %s", job.branch)
            return False
        return review_requests.ensure_mergeable(
            job.workspace.path, job.branch, job.review_request.number, self.base_branch
        )

    def merge(self, job: MergeJob) -> bool:
        if job.review_request is None:
            return False
        if not review_requests.merge_review_request(self.repo_dir, job.review_request.number):
            return False
        logger.info("Merged %s", job.review_request)
        return True
