"""Markers the agents print to report what they did."""

from __future__ import annotations

from ralph_loop.schemas import ReviewVerdict

PLAN_MARKER = "PLAN:"
DONE_MARKER = "DONE:"
FIXED_MARKER = "FIXED:"
REVIEW_PASSED = "REVIEW_PASSED"
REVIEW_FAILED = "REVIEW_FAILED"


def marker_line(text: str, marker: str) -> str | None:
    """Return the text after *marker* on the first line that starts with it."""
    for line in (text or "").splitlines():
        stripped = line.strip()
        if stripped.startswith(marker):
            return stripped[len(marker):].strip()
    return None


def plan_summary(text: str) -> str:
    return marker_line(text, PLAN_MARKER) or ""


def done_summary(text: str) -> str:
    return marker_line(text, DONE_MARKER) or ""


def fixed_summary(text: str) -> str:
    return marker_line(text, FIXED_MARKER) or ""


def classify_review(text: str) -> ReviewVerdict:
    """Classify review output; a failure marker outweighs a pass marker."""
    body = text or ""
    if REVIEW_FAILED in body:
        return ReviewVerdict.FAILED
    if REVIEW_PASSED in body:
        return ReviewVerdict.PASSED
    return ReviewVerdict.AMBIGUOUS
