"""MCP tools for running reviews and managing persistent review sessions."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

import httpx

from ..config import SESSION_MANAGER_URL
from ..models.report import ReviewResult, format_text

NOT_REACHABLE = (
    "Session Manager is not reachable at "
    f"{SESSION_MANAGER_URL}. It should auto-start with the MCP server. "
    "If running standalone: ui-review-server"
)


async def _call_session_manager(method: str, path: str, json_body: dict | None = None) -> dict:
    """Make a request to the session manager HTTP service."""
    url = f"{SESSION_MANAGER_URL}{path}"
    try:
        async with httpx.AsyncClient(timeout=120.0) as client:
            if method == "GET":
                resp = await client.get(url)
            else:
                resp = await client.post(url, json=json_body or {})

            if resp.status_code >= 400:
                data = resp.json()
                return {"error": data.get("error", f"HTTP {resp.status_code}")}
            return resp.json()

    except httpx.ConnectError:
        return {"error": NOT_REACHABLE}
    except httpx.TimeoutException:
        return {"error": "Session Manager timed out."}
    except (httpx.HTTPError, ValueError) as e:
        return {"error": f"Failed to connect to Session Manager: {e}"}


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, dict]]:
    """Turn Server-Sent Event lines into (event, data) pairs."""
    event = "message"
    data_lines: list[str] = []
    async for line in lines:
        if not line:
            if data_lines:
                try:
                    payload = json.loads("\n".join(data_lines))
                except json.JSONDecodeError:
                    payload = {"message": "\n".join(data_lines)}
                yield event, payload
            event, data_lines = "message", []
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())


async def _stream_session_manager(path: str, json_body: dict) -> list[tuple[str, dict]]:
    """POST to a streaming endpoint and collect every event until the stream ends."""
    url = f"{SESSION_MANAGER_URL}{path}"
    events: list[tuple[str, dict]] = []
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(120.0, read=None)) as client:
            async with client.stream("POST", url, json=json_body) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    data = resp.json()
                    return [("error", {"message": data.get("error", f"HTTP {resp.status_code}")})]
                async for event in parse_sse(resp.aiter_lines()):
                    events.append(event)
    except httpx.ConnectError:
        return [("error", {"message": NOT_REACHABLE})]
    except (httpx.HTTPError, ValueError) as e:
        events.append(("error", {"message": f"Stream from Session Manager failed: {e}"}))
    return events


def _format_review(events: list[tuple[str, dict]]) -> str:
    lines = []
    report_id = None
    for event, data in events:
        if event == "report-id":
            report_id = data.get("reportId")
        elif event == "result":
            lines.append(format_text(ReviewResult(**data.get("data", {}))))
            if data.get("cached"):
                lines.append("(cached result from an earlier run)")
            lines.append("")
        elif event == "page-error":
            lines.append(f"[{data.get('page')} @ {data.get('viewport')}] Error: {data.get('message')}\n")
        elif event == "session":
            polling = " (polling enabled)" if data.get("polling") else ""
            lines.append(f"Session {data.get('sessionId')} kept alive{polling}.")
        elif event == "done":
            summary = data.get("summary", {})
            lines.append(
                f"Review {data.get('status', 'complete')}: {summary.get('pages', 0)} page(s), "
                f"{summary.get('issues', 0)} issue(s) "
                f"({summary.get('critical', 0)} critical, {summary.get('warning', 0)} warning, "
                f"{summary.get('suggestion', 0)} suggestion)."
            )
        elif event == "error":
            lines.append(f"Error: {data.get('message')}")

    if report_id:
        lines.append(f"Report ID: {report_id}")
    return "\n".join(lines) if lines else "No events received from Session Manager."


async def start_review(
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
    """Run a visual review and return the findings as text.

    Args:
        url: Site root URL (ignored when session_id is given).
        pages: [{"name": ..., "path": ..., "actions": [...], "token_auth": {...}}].
        viewports: Any of desktop, laptop, tablet, mobile.
        persistent: Keep the browser alive as a session after the run.
        session_id: Re-run an existing session.
        report_id: Resume this report.
        skip_completed: With report_id, keep results that already exist.
        poll_interval: Seconds between change-detection cycles (0 = no polling).
        allow_private: Allow URLs resolving to private addresses.
        dry_run: Only capture screenshots, no analysis.

    Returns:
        Formatted findings per page and viewport.
    """
    body: dict[str, Any] = {
        "url": url,
        "persistent": persistent,
        "skip_completed": skip_completed,
        "allow_private": allow_private,
        "dry_run": dry_run,
    }
    if pages:
        body["pages"] = pages
    if viewports:
        body["viewports"] = viewports
    if session_id:
        body["session_id"] = session_id
    if report_id:
        body["report_id"] = report_id
    if poll_interval:
        body["poll_interval"] = poll_interval

    return _format_review(await _stream_session_manager("/api/review", body))


async def list_sessions() -> str:
    """List persistent review sessions."""
    result = await _call_session_manager("GET", "/api/sessions")

    if "error" in result:
        return f"Error: {result['error']}"

    sessions = result.get("sessions", [])
    if not sessions:
        return "No active sessions."
    return json.dumps(sessions, indent=2)


async def stop_session(session_id: str) -> str:
    """Stop a persistent session and close its browser."""
    result = await _call_session_manager("POST", f"/api/sessions/{session_id}/stop")

    if "error" in result:
        return f"Error: {result['error']}"

    return result.get("message", "Session stopped.")


async def set_polling(session_id: str, interval_seconds: int = 0) -> str:
    """Start polling a session every `interval_seconds`, or stop it with 0."""
    result = await _call_session_manager(
        "POST",
        f"/api/sessions/{session_id}/poll",
        {"interval_seconds": interval_seconds or None},
    )

    if "error" in result:
        return f"Error: {result['error']}"

    session = result.get("session", {})
    if session.get("polling"):
        return f"Polling session {session_id} every {session.get('poll_interval')}s."
    return f"Polling stopped for session {session_id}."


async def discover_pages(url: str, max_pages: int = 50, allow_private: bool = False) -> str:
    """Discover reviewable pages on a site (sitemap first, then crawling)."""
    events = await _stream_session_manager(
        "/api/discover", {"url": url, "max_pages": max_pages, "allow_private": allow_private}
    )

    for event, data in events:
        if event == "error":
            return f"Error: {data.get('message')}"
        if event == "done":
            lines = [
                f"Found {len(data.get('pages', []))} page(s) via {data.get('source')} "
                f"({data.get('total_links_found', 0)} links, {data.get('pages_skipped', 0)} not visited):"
            ]
            for page in data.get("pages", []):
                status = f" [error: {page['error']}]" if page.get("error") else ""
                lines.append(f"  - {page['name']}: {page['path']}{status}")
            return "\n".join(lines)

    return "Discovery ended without a result."


async def list_reports(limit: int = 20) -> str:
    """List stored review reports, newest first."""
    result = await _call_session_manager("GET", f"/api/reports?limit={limit}")

    if "error" in result:
        return f"Error: {result['error']}"

    return json.dumps(result.get("reports", []), indent=2)


async def get_report(report_id: str) -> str:
    """Return one stored report as text."""
    result = await _call_session_manager("GET", f"/api/reports/{report_id}")

    if "error" in result:
        return f"Error: {result['error']}"

    report = result.get("report", {})
    lines = [
        f"Report {report.get('id')} for {report.get('base_url')} ({report.get('status')})",
        f"Results: {len(report.get('results', {}))}/{report.get('total_expected', 0)}",
        "",
    ]
    for result_data in report.get("results", {}).values():
        lines.append(format_text(ReviewResult(**result_data)))
        lines.append("")
    for key, error in report.get("errors", {}).items():
        lines.append(f"[{key}] Error: {error.get('message')}")
    return "\n".join(lines)
