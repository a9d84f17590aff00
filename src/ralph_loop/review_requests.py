"""GitHub pull requests through the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph_loop import git_tools

logger = logging.getLogger(__name__)

_PR_URL_RE = re.compile(r"https://github\.com/\S+/pull/(\d+)")


class ReviewRequestError(RuntimeError):
    """Raised when a ``gh`` command fails."""


@dataclass(frozen=True)
class ReviewRequest:
    number: int
    url: str
    branch: str = ""

    def __str__(self) -> str:
        return f"PR #{self.number} ({self.url})"


def _run_gh(*args: str, cwd: Path, timeout: int = 120) -> str:
    logger.debug("gh %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            ["gh", *args], cwd=cwd, capture_output=True, text=True, timeout=timeout
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ReviewRequestError(f"`gh {' '.join(args)}` could not run: {exc}") from exc
    if result.returncode != 0:
        raise ReviewRequestError(
            f"`gh {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result.stdout.strip()


def _gh_json(*args: str, cwd: Path) -> Any:
    raw = _run_gh(*args, cwd=cwd)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ReviewRequestError(f"`gh {' '.join(args)}` returned invalid JSON: {exc}") from exc


def find_open_review_request(cwd: str | Path, branch: str) -> ReviewRequest | None:
    try:
        view = _gh_json("pr", "view", branch, "--json", "number,url,state", cwd=Path(cwd))
    except ReviewRequestError as exc:
        logger.debug("No open PR for %s: %s", branch, exc)
        return None
    if not isinstance(view, dict) or view.get("state") != "OPEN":
        return None
    if not isinstance(view.get("number"), int) or not isinstance(view.get("url"), str):
        return None
    return ReviewRequest(number=view["number"], url=view["url"], branch=branch)


def create_review_request(
    cwd: str | Path,
    branch: str,
    title: str,
    body: str,
    base: str = git_tools.DEFAULT_BASE_BRANCH,
) -> ReviewRequest | None:
    try:
        output = _run_gh(
            "pr", "create", "--base", base, "--head", branch, "--title", title, "--body", body,
            cwd=Path(cwd),
        )
    except ReviewRequestError as exc:
        logger.error("Creating PR for %s failed: %s", branch, exc)
        return None
    found = find_open_review_request(cwd, branch)
    if found is not None:
        return found
    match = _PR_URL_RE.search(output)
    if match is None:
        return None
    return ReviewRequest(number=int(match.group(1)), url=match.group(0), branch=branch)


def ensure_review_request(
    cwd: str | Path,
    branch: str,
    title: str,
    body: str,
    base: str = git_tools.DEFAULT_BASE_BRANCH,
) -> ReviewRequest | None:
    """Return the open PR for *branch*, creating one if there is none."""
    return find_open_review_request(cwd, branch) or create_review_request(
        cwd, branch, title, body, base
    )


def read_review_request(cwd: str | Path, number: int) -> dict[str, Any] | None:
    try:
        view = _gh_json(
            "pr", "view", str(number),
            "--json", "number,url,state,mergeable,mergeStateStatus,mergedAt",
            cwd=Path(cwd),
        )
    except ReviewRequestError as exc:
        logger.warning("Reading PR #%d failed: %s", number, exc)
        return None
    return view if isinstance(view, dict) else None


def _is_conflicting(view: dict[str, Any] | None) -> bool:
    if not view:
        return False
    return view.get("mergeable") == "CONFLICTING" or view.get("mergeStateStatus") == "DIRTY"


def is_mergeable(cwd: str | Path, number: int) -> bool:
    return not _is_conflicting(read_review_request(cwd, number))


def ensure_mergeable(
    cwd: str | Path,
    branch: str,
    number: int,
    base: str = git_tools.DEFAULT_BASE_BRANCH,
) -> bool:
    """Merge ``origin/<base>`` into a conflicting PR branch and push it."""
    if is_mergeable(cwd, number):
        return True
    path = Path(cwd)
    try:
        git_tools._run_git("fetch", "origin", base, cwd=path, timeout=300)
        git_tools._run_git("merge", "--no-edit", f"origin/{base}", cwd=path, timeout=120)
        git_tools._run_git("push", "origin", branch, cwd=path, timeout=300)
    except git_tools.GitError as exc:
        logger.warning("Could not bring PR #%d up to date: %s", number, exc)
        git_tools._abort_merge(path)
        return False
    return is_mergeable(cwd, number)


def merge_review_request(cwd: str | Path, number: int) -> bool:
    """Squash-merge the PR and confirm GitHub reports it merged."""
    try:
        _run_gh("pr", "merge", str(number), "--squash", "--delete-branch", cwd=Path(cwd), timeout=300)
    except ReviewRequestError as exc:
        logger.error("Merging PR #%d failed: %s", number, exc)
        return False
    view = read_review_request(cwd, number)
    return bool(view and view.get("mergedAt"))


def list_open_review_requests(cwd: str | Path, prefix: str) -> list[ReviewRequest]:
    """Return open PRs whose head branch starts with ``<prefix>-``."""
    try:
        items = _gh_json(
            "pr", "list", "--state", "open", "--limit", "200", "--json", "number,url,headRefName",
            cwd=Path(cwd),
        )
    except ReviewRequestError as exc:
        logger.warning("Listing open PRs failed: %s", exc)
        return []
    if not isinstance(items, list):
        return []
    return [
        ReviewRequest(number=item["number"], url=item["url"], branch=item["headRefName"])
        for item in items
        if isinstance(item, dict)
        and isinstance(item.get("number"), int)
        and isinstance(item.get("url"), str)
        and isinstance(item.get("headRefName"), str)
        and item["headRefName"].startswith(f"{prefix}-")
    ]
