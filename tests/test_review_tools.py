"""Tests for the MCP tool helpers."""

import asyncio

from ui_review.tools.review_tools import _format_review, parse_sse


async def _lines(*lines: str):
    for line in lines:
        yield line


def test_parse_sse_groups_events() -> None:
    async def scenario():
        stream = _lines(
            "event: report-id", 'data: {"reportId": "review-1"}', "",
            "event: progress", 'data: {"status": "capturing"}', "",
            ": keepalive", "",
        )
        return [event async for event in parse_sse(stream)]

    events = asyncio.run(scenario())

    assert events == [("report-id", {"reportId": "review-1"}), ("progress", {"status": "capturing"})]


def test_format_review_summarizes_run() -> None:
    text = _format_review([
        ("report-id", {"reportId": "review-1"}),
        ("result", {"page": "Home", "viewport": "desktop", "data": {
            "url": "https://example.test/", "viewport": "desktop", "summary": "Fine",
            "issues": [{"severity": "critical", "category": "layout", "location": "nav",
                        "description": "Overlap", "recommendation": "Stack"}],
        }}),
        ("page-error", {"page": "About", "viewport": "desktop", "message": "Screenshot capture failed"}),
        ("done", {"status": "complete", "summary": {"pages": 1, "issues": 1, "critical": 1}}),
    ])

    assert "Overlap" in text
    assert "[About @ desktop] Error: Screenshot capture failed" in text
    assert "Review complete: 1 page(s), 1 issue(s)" in text
    assert text.endswith("Report ID: review-1")
