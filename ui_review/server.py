"""MCP Server entry point for the UI review plugin.

Exposes 7 tools via the Model Context Protocol:
- Reviews: start_review, discover_pages
- Sessions: list_sessions, stop_session, set_polling
- Reports: list_reports, get_report

The Session Manager HTTP service (aiohttp on localhost:3000) is auto-started
as part of the MCP server lifecycle, no separate process needed.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

from aiohttp.web import AppRunner, TCPSite
from mcp.server.fastmcp import FastMCP

from .config import SESSION_MANAGER_HOST, SESSION_MANAGER_PORT, ensure_dirs
from .tools.review_tools import (
    discover_pages,
    get_report,
    list_reports,
    list_sessions,
    set_polling,
    start_review,
    stop_session,
)

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("ui-review")

# Ensure data directories exist
ensure_dirs()


# ── Lifespan: auto-start Session Manager ─────────────────────────────────────


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Start the Session Manager HTTP service alongside the MCP server."""
    from .session_manager.manager import create_app

    app = create_app()
    runner = AppRunner(app)
    await runner.setup()
    site = TCPSite(runner, SESSION_MANAGER_HOST, SESSION_MANAGER_PORT)
    managed = False
    try:
        await site.start()
        logger.info(
            "Session Manager auto-started on %s:%s", SESSION_MANAGER_HOST, SESSION_MANAGER_PORT
        )
        managed = True
    except OSError:
        # Port already in use, assume Session Manager was started manually
        logger.info(
            "Session Manager already running on %s:%s", SESSION_MANAGER_HOST, SESSION_MANAGER_PORT
        )
        await runner.cleanup()

    try:
        yield {}
    finally:
        if managed:
            await runner.cleanup()
            logger.info("Session Manager stopped.")


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "ui-review",
    lifespan=lifespan,
    instructions=(
        "UI Review - Automated visual review of web pages with a vision model. "
        "The Session Manager starts automatically with this server. "
        "Use discover_pages to find pages on a site, then start_review to capture "
        "and analyze them. Pass persistent=True to keep the browser alive and "
        "re-run it later with session_id, or set_polling to re-check pages "
        "periodically. Use list_reports and get_report for earlier results."
    ),
)


# ── Review Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
async def tool_start_review(
    url: str = "",
    pages: Optional[list[dict[str, Any]]] = None,
    viewports: Optional[list[str]] = None,
    persistent: bool = False,
    session_id: str = "",
    report_id: str = "",
    skip_completed: bool = False,
    poll_interval: int = 0,
    allow_private: bool = False,
    dry_run: bool = False,
) -> str:
    """Capture pages in a browser and review them with the vision model.

    Args:
        url: Site root URL, e.g. "https://example.com".
        pages: Pages to review: [{"name": "Home", "path": "/"}]. Defaults to the home page.
        viewports: Any of "desktop", "laptop", "tablet", "mobile" (default desktop).
        persistent: Keep the browser alive as a session after the run.
        session_id: Re-run an existing persistent session instead of launching a browser.
        report_id: Resume an earlier report.
        skip_completed: With report_id, skip pages that already have results.
        poll_interval: Seconds between change-detection cycles (persistent only, 0=off).
        allow_private: Allow URLs that resolve to private/internal addresses.
        dry_run: Capture and store screenshots without running the vision model.
    """
    return await start_review(
        url, pages, viewports, persistent, session_id,
        report_id, skip_completed, poll_interval, allow_private, dry_run,
    )


@mcp.tool()
async def tool_discover_pages(url: str, max_pages: int = 50, allow_private: bool = False) -> str:
    """Discover pages on a site via sitemap.xml, falling back to crawling links.

    Args:
        url: Site root URL.
        max_pages: Maximum pages to return (default 50).
        allow_private: Allow URLs that resolve to private/internal addresses.
    """
    return await discover_pages(url, max_pages, allow_private)


# ── Session Tools ────────────────────────────────────────────────────────────


@mcp.tool()
async def tool_list_sessions() -> str:
    """List persistent review sessions with their polling state."""
    return await list_sessions()


@mcp.tool()
async def tool_stop_session(session_id: str) -> str:
    """Stop a persistent session and close its browser."""
    return await stop_session(session_id)


@mcp.tool()
async def tool_set_polling(session_id: str, interval_seconds: int = 0) -> str:
    """Start or stop periodic change detection for a session.

    Args:
        session_id: Session to poll.
        interval_seconds: Seconds between cycles (minimum 60). 0 stops polling.
    """
    return await set_polling(session_id, interval_seconds)


# ── Report Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
async def tool_list_reports(limit: int = 20) -> str:
    """List stored review reports, newest first."""
    return await list_reports(limit)


@mcp.tool()
async def tool_get_report(report_id: str) -> str:
    """Show every result and error of a stored report."""
    return await get_report(report_id)


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting UI Review MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
