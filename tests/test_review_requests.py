"""Tests for the gh-backed pull request helpers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import ralph_loop.review_requests as rr
from ralph_loop.git_tools import GitError
from ralph_loop.review_requests import ReviewRequest, ReviewRequestError


class FakeGh:
    """Answers ``gh`` invocations from a table keyed on the first args."""

    def __init__(self, responses: dict[tuple[str, ...], object]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, ...]] = []

    def __call__(self, *args: str, cwd: Path, timeout: int = 120) -> str:
        self.calls.append(args)
        for prefix, response in self.responses.items():
            if args[: len(prefix)] == prefix:
                if isinstance(response, Exception):
                    raise response
                return response if isinstance(response, str) else json.dumps(response)
        raise ReviewRequestError(f"unexpected gh call {args}")


def test_review_request_str() -> None:
    assert str(ReviewRequest(12, "https://github.com/o/r/pull/12")) == "PR #12 (https://github.com/o/r/pull/12)"


def test_ensure_returns_existing_open_request(monkeypatch, tmp_path: Path) -> None:
    gh = FakeGh({("pr", "view"): {"number": 4, "url": "https://github.com/o/r/pull/4", "state": "OPEN"}})
    monkeypatch.setattr(rr, "_run_gh", gh)

    found = rr.ensure_review_request(tmp_path, "change-004", "feat: x", "body")

    assert found == ReviewRequest(4, "https://github.com/o/r/pull/4", "change-004")
    assert not any(call[:2] == ("pr", "create") for call in gh.calls)


def test_ensure_creates_when_none_open(monkeypatch, tmp_path: Path) -> None:
    views = iter(
        [
            {"number": 3, "url": "https://github.com/o/r/pull/3", "state": "MERGED"},
            ReviewRequestError("no pull requests found"),
        ]
    )

    def fake(*args: str, cwd: Path, timeout: int = 120) -> str:
        if args[:2] == ("pr", "create"):
            assert "--head" in args and "change-005" in args
            return "Creating pull request\nhttps://github.com/o/r/pull/9\n"
        response = next(views)
        if isinstance(response, Exception):
            raise response
        return json.dumps(response)

    monkeypatch.setattr(rr, "_run_gh", fake)

    created = rr.ensure_review_request(tmp_path, "change-005", "feat: y", "body")

    assert created == ReviewRequest(9, "https://github.com/o/r/pull/9", "change-005")


def test_create_failure_returns_none(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(rr, "_run_gh", FakeGh({("pr", "create"): ReviewRequestError("auth")}))
    assert rr.create_review_request(tmp_path, "change-001", "t", "b") is None


@pytest.mark.parametrize(
    ("view", "expected"),
    [
        ({"mergeable": "MERGEABLE", "mergeStateStatus": "CLEAN"}, True),
        ({"mergeable": "CONFLICTING", "mergeStateStatus": "DIRTY"}, False),
        ({"mergeable": "UNKNOWN", "mergeStateStatus": "DIRTY"}, False),
    ],
)
def test_is_mergeable(monkeypatch, tmp_path: Path, view: dict, expected: bool) -> None:
    monkeypatch.setattr(rr, "_run_gh", FakeGh({("pr", "view"): view}))
    assert rr.is_mergeable(tmp_path, 7) is expected


def test_ensure_mergeable_syncs_conflicting_branch(monkeypatch, tmp_path: Path) -> None:
    views = iter([{"mergeable": "CONFLICTING"}, {"mergeable": "MERGEABLE"}])
    monkeypatch.setattr(rr, "_run_gh", lambda *a, cwd, timeout=120: json.dumps(next(views)))
    git_calls: list[tuple[str, ...]] = []
    monkeypatch.setattr(rr.git_tools, "_run_git", lambda *a, cwd, **kw: git_calls.append(a))

    assert rr.ensure_mergeable(tmp_path, "change-002", 7, "main") is True
    assert git_calls == [
        ("fetch", "origin", "main"),
        ("merge", "--no-edit", "origin/main"),
        ("push", "origin", "change-002"),
    ]


def test_ensure_mergeable_aborts_failed_sync(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(rr, "_run_gh", FakeGh({("pr", "view"): {"mergeable": "CONFLICTING"}}))

    def failing_git(*args: str, cwd: Path, **kw):
        if args[0] == "merge":
            raise GitError("conflict")

    aborted: list[Path] = []
    monkeypatch.setattr(rr.git_tools, "_run_git", failing_git)
    monkeypatch.setattr(rr.git_tools, "_abort_merge", aborted.append)

    assert rr.ensure_mergeable(tmp_path, "change-002", 7, "main") is False
    assert aborted == [tmp_path]


def test_merge_confirms_merged_at(monkeypatch, tmp_path: Path) -> None:
    gh = FakeGh(
        {
            ("pr", "merge"): "",
            ("pr", "view"): {"number": 7, "mergedAt": "2026-01-01T00:00:00Z"},
        }
    )
    monkeypatch.setattr(rr, "_run_gh", gh)

    assert rr.merge_review_request(tmp_path, 7) is True
    assert gh.calls[0] == ("pr", "merge", "7", "--squash", "--delete-branch")


def test_merge_without_confirmation_fails(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(rr, "_run_gh", FakeGh({("pr", "merge"): "", ("pr", "view"): {"mergedAt": None}}))
    assert rr.merge_review_request(tmp_path, 7) is False


def test_list_open_filters_by_prefix(monkeypatch, tmp_path: Path) -> None:
    items = [
        {"number": 1, "url": "u1", "headRefName": "change-001"},
        {"number": 2, "url": "u2", "headRefName": "feature/other"},
        {"number": 3, "url": "u3", "headRefName": "changes-003"},
        {"number": "bad"},
    ]
    monkeypatch.setattr(rr, "_run_gh", FakeGh({("pr", "list"): items}))
    assert rr.list_open_review_requests(tmp_path, "change") == [ReviewRequest(1, "u1", "change-001")]


def test_invalid_json_raises(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(rr, "_run_gh", lambda *a, cwd, timeout=120: "not json")
    with pytest.raises(ReviewRequestError, match="invalid JSON"):
        rr._gh_json("pr", "list", cwd=tmp_path)
