"""Pydantic models for review reports, plus sanitizing and text rendering."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..constants import (
    CATEGORIES,
    MAX_FINDINGS,
    RESULT_KEY_SEPARATOR,
    SEVERITY_BADGES,
    SEVERITY_ORDER,
)

ReportStatus = Literal["running", "complete", "interrupted", "error"]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def result_key(page_name: str, viewport_name: str) -> str:
    """Composite key for a page×viewport result."""
    return f"{page_name}{RESULT_KEY_SEPARATOR}{viewport_name}"


def new_report_id() -> str:
    return f"review-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class Finding(BaseModel):
    """One issue reported by the vision model."""

    severity: str
    category: str
    location: str = "unknown"
    description: str
    recommendation: str = ""


class ReviewResult(BaseModel):
    """Sanitized analysis of one page at one viewport."""

    url: str = ""
    viewport: str = ""
    issues: list[Finding] = Field(default_factory=list)
    summary: str = ""
    raw: bool = False  # True when the model never produced structured output


class ErrorRecord(BaseModel):
    message: str
    timestamp: str = Field(default_factory=_now)


class SummaryCounts(BaseModel):
    pages: int = 0
    issues: int = 0
    critical: int = 0
    warning: int = 0
    suggestion: int = 0


class PageRef(BaseModel):
    name: str
    path: str


class Report(BaseModel):
    """Durable record of one review, mutated in place by resumed runs and poll cycles."""

    id: str = Field(default_factory=new_report_id)
    base_url: str
    status: ReportStatus = "running"
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)
    config: dict[str, Any] = Field(default_factory=dict)
    pages: list[PageRef] = Field(default_factory=list)
    total_expected: int = 0
    results: dict[str, ReviewResult] = Field(default_factory=dict)
    errors: dict[str, ErrorRecord] = Field(default_factory=dict)
    summary: SummaryCounts = Field(default_factory=SummaryCounts)
    error: Optional[str] = None

    def touch(self):
        self.updated_at = _now()

    def record_result(self, key: str, result: ReviewResult):
        """Store a result, clear any earlier error for the key, recount."""
        self.results[key] = result
        self.errors.pop(key, None)
        self.recompute_summary()
        self.touch()

    def record_error(self, key: str, message: str):
        """Store a failure, dropping any earlier result for the key, recount."""
        self.errors[key] = ErrorRecord(message=message)
        if self.results.pop(key, None) is not None:
            self.recompute_summary()
        self.touch()

    def recompute_summary(self):
        """Rebuild summary counts from scratch so they never drift from results."""
        counts = SummaryCounts(pages=len(self.results))
        for result in self.results.values():
            for issue in result.issues:
                counts.issues += 1
                if issue.severity in SEVERITY_ORDER:
                    setattr(counts, issue.severity, getattr(counts, issue.severity) + 1)
        self.summary = counts


class ReportSummary(BaseModel):
    """Lightweight report entry for list responses."""

    id: str
    base_url: str
    created_at: str
    updated_at: str
    status: str
    result_count: int = 0
    total_expected: int = 0
    summary: SummaryCounts = Field(default_factory=SummaryCounts)

    @classmethod
    def from_report(cls, report: Report) -> ReportSummary:
        return cls(
            id=report.id,
            base_url=report.base_url,
            created_at=report.created_at,
            updated_at=report.updated_at,
            status=report.status,
            result_count=len(report.results),
            total_expected=report.total_expected,
            summary=report.summary,
        )


# ── Sanitizing ───────────────────────────────────────────────────────────────


def _sanitize_issue(issue: Any) -> Optional[Finding]:
    if not isinstance(issue, dict):
        return None
    description = issue.get("description")
    if not isinstance(description, str) or not description:
        return None
    if issue.get("severity") not in SEVERITY_ORDER:
        return None
    if issue.get("category") not in CATEGORIES:
        return None

    location = issue.get("location")
    recommendation = issue.get("recommendation")
    return Finding(
        severity=issue["severity"],
        category=issue["category"],
        location=location if isinstance(location, str) else "unknown",
        description=description,
        recommendation=recommendation if isinstance(recommendation, str) else "",
    )


def sanitize_result(data: Any, url: str = "", viewport: str = "") -> ReviewResult:
    """Validate parsed model output into a ReviewResult.

    Unknown severities/categories and malformed issues are dropped, at most
    MAX_FINDINGS are kept, and the rest are ordered critical first.
    """
    data = data if isinstance(data, dict) else {}
    raw_issues = data.get("issues") if isinstance(data.get("issues"), list) else []

    issues = [f for f in (_sanitize_issue(i) for i in raw_issues) if f is not None]
    issues = issues[:MAX_FINDINGS]
    issues.sort(key=lambda f: SEVERITY_ORDER[f.severity])

    summary = data.get("summary")
    return ReviewResult(
        url=url,
        viewport=viewport,
        issues=issues,
        summary=summary if isinstance(summary, str) else "",
        raw=bool(data.get("_raw", False)),
    )


def format_text(result: ReviewResult) -> str:
    """Render a review result as human-readable text."""
    lines = [f"UI Review: {result.url}", f"Viewport: {result.viewport}", "─" * 60]

    if result.summary:
        lines.append(f"\nSummary: {result.summary}\n")

    if not result.issues:
        lines.append("No issues found.")
    else:
        lines.append(f"Found {len(result.issues)} issue(s):\n")
        for i, issue in enumerate(result.issues, 1):
            badge = SEVERITY_BADGES.get(issue.severity, issue.severity)
            lines.append(f"  {i}. [{badge}] [{issue.category}]")
            lines.append(f"     Location: {issue.location}")
            lines.append(f"     {issue.description}")
            if issue.recommendation:
                lines.append(f"     Fix: {issue.recommendation}")
            lines.append("")

    if result.raw:
        lines.append(
            "\nNote: model response could not be parsed as structured JSON. "
            "Results may be incomplete."
        )

    return "\n".join(lines)
