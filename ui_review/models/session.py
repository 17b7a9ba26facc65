"""Pydantic models for session and discovery state exposed to clients."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from ..config import DEFAULT_MAX_PAGES
from .page import LoginSpec, PageSpec


class SessionInfo(BaseModel):
    """Current state of one persistent browser session."""

    id: str
    base_url: str
    started_at: str
    busy: bool = False
    polling: bool = False
    poll_interval: Optional[int] = None
    state: str = "live"  # live, relaunching, removed
    report_id: Optional[str] = None


class DiscoveredPage(BaseModel):
    name: str
    path: str
    depth: int = 0
    status: int = 0
    links: int = 0
    error: Optional[str] = None


class DiscoveryResult(BaseModel):
    pages: list[DiscoveredPage] = Field(default_factory=list)
    source: str = ""  # "sitemap" or "crawl"
    total_links_found: int = 0
    pages_skipped: int = 0


# ── Requests ─────────────────────────────────────────────────────────────────


class ReviewRequest(BaseModel):
    """Body of POST /api/review."""

    url: str = ""  # ignored when session_id is given
    pages: list[PageSpec] = Field(default_factory=lambda: [PageSpec(name="Home", path="/")])
    viewports: list[str] = Field(default_factory=lambda: ["desktop"])
    persistent: bool = False
    session_id: Optional[str] = None
    report_id: Optional[str] = None  # resume this report
    skip_completed: bool = False
    poll_interval: Optional[int] = None  # seconds; starts polling once registered
    login: Optional[LoginSpec] = None
    auth_state: Optional[dict[str, Any]] = None
    allow_private: bool = False
    dry_run: bool = False  # capture and store screenshots, skip analysis


class DiscoverRequest(BaseModel):
    """Body of POST /api/discover."""

    url: str
    max_pages: int = Field(default=DEFAULT_MAX_PAGES, ge=1, le=500)
    login: Optional[LoginSpec] = None
    auth_state: Optional[dict[str, Any]] = None
    allow_private: bool = False
