"""Session Manager HTTP service.

Runs as a lightweight local web server that owns the browsers, the report
database and the persistent review sessions. The MCP server talks to it
over HTTP; long-running operations stream Server-Sent Events.

Endpoints:
    GET  /api/config                - Active analysis/browser settings
    GET  /api/health                - Analysis server reachability and models
    GET  /api/reports               - Stored reports, newest first
    GET  /api/reports/{id}          - One full report
    POST /api/review                - Run a review (SSE)
    POST /api/discover              - Discover pages on a site (SSE)
    GET  /api/sessions              - Registered persistent sessions
    POST /api/sessions/{id}/stop    - Close a session's browser
    POST /api/sessions/{id}/poll    - Start/stop polling ({"interval_seconds": int | null})
    POST /api/sessions/{id}/cycle   - Run one poll cycle now
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import aiosqlite
import httpx
from aiohttp import web
from pydantic import ValidationError

from ..config import (
    ANALYSIS_TIMEOUT,
    BROWSER_ENGINE,
    DB_PATH,
    MIN_POLL_INTERVAL_SECONDS,
    OLLAMA_MODEL,
    OLLAMA_URL,
    SCREENSHOT_DIR,
    SESSION_MANAGER_HOST,
    SESSION_MANAGER_PORT,
    ensure_dirs,
    resolve_viewports,
    validate_settings,
)
from ..constants import VIEWPORTS
from ..database.models import initialize_db
from ..database.repository import ReportRepository
from ..database.screenshots import ScreenshotStore, safe_name
from ..errors import ConfigError, SessionBusyError, SessionNotFoundError, UiReviewError
from ..models.page import PageSpec
from ..models.report import PageRef, Report
from ..models.session import DiscoverRequest, DiscoveryResult, ReviewRequest, SessionInfo
from ..review.analysis import OllamaClient
from ..review.discover import DiscoveryCrawler
from ..review.pipeline import Emit, ReviewPipeline, notify
from ..review.poller import CycleStats, PollCycleEngine
from ..review.tokens import TokenInjector, perform_login
from .browser import BrowserLauncher
from .registry import Session, SessionOrigin, SessionRegistry, SessionState
from .supervisor import CrashSupervisor
from .urls import check_ssrf, validate_url

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def check_page_names(pages: list[PageSpec]):
    """Reject duplicate page names, including names that share a screenshot file."""
    seen: dict[str, str] = {}
    for page in pages:
        key = safe_name(page.name)
        if key in seen:
            raise ConfigError(
                f'Duplicate page name "{page.name}" (conflicts with "{seen[key]}")'
            )
        seen[key] = page.name


class SessionManager:
    """Orchestrates review runs, persistent sessions and discovery."""

    def __init__(
        self,
        launcher: Optional[BrowserLauncher] = None,
        analysis: Optional[OllamaClient] = None,
        tokens: Optional[TokenInjector] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        db_path: Path = DB_PATH,
        screenshot_dir: Path = SCREENSHOT_DIR,
    ):
        self.launcher = launcher or BrowserLauncher()
        self.analysis = analysis or OllamaClient()
        self.tokens = tokens or TokenInjector()
        self.registry = SessionRegistry()
        self.supervisor = CrashSupervisor(self.registry, self.launcher)
        self.store = ScreenshotStore(screenshot_dir)
        self.crawler = DiscoveryCrawler(self.launcher, http_client)
        self._db_path = db_path
        self.db: aiosqlite.Connection | None = None
        self.repo: ReportRepository | None = None
        self.pipeline: ReviewPipeline | None = None
        self.poller: PollCycleEngine | None = None

    async def setup(self):
        """Initialize database connection and the review engines."""
        self.db = await aiosqlite.connect(str(self._db_path))
        await initialize_db(self.db)
        self.repo = ReportRepository(self.db)
        self.pipeline = ReviewPipeline(
            self.analysis, self.repo, self.store, self.launcher, self.supervisor, self.tokens
        )
        self.poller = PollCycleEngine(self.pipeline, self.repo, self.store, self.supervisor)

    async def cleanup(self):
        """Close every session browser, the analysis client and the database."""
        await self.registry.shutdown()
        await self.analysis.aclose()
        if self.db:
            await self.db.close()

    def _get_session(self, session_id: str) -> Session:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    # ── Reviews ──────────────────────────────────────────────────────────────

    async def start_review(
        self,
        request: ReviewRequest,
        emit: Optional[Emit] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> Report:
        """Run a review, optionally keeping the browser alive as a session.

        A request with `session_id` borrows that session's browser. A
        `persistent` request without one launches a browser and registers it
        once the run finishes unaborted.

        Raises:
            ConfigError: invalid URL, pages, viewports or poll interval.
            SessionNotFoundError: unknown `session_id` or `report_id`.
            SessionBusyError: the session is already running.
            LoginError: the scripted login did not get past the login page.
        """
        abort = abort or asyncio.Event()

        if request.poll_interval is not None:
            if not (request.persistent or request.session_id):
                raise ConfigError("poll_interval requires a persistent session")
            if request.poll_interval < MIN_POLL_INTERVAL_SECONDS:
                raise ConfigError(
                    f"Poll interval must be at least {MIN_POLL_INTERVAL_SECONDS} seconds"
                )

        session = None
        if request.session_id:
            session = self._get_session(request.session_id)
            if session.busy:
                raise SessionBusyError(f"Session {session.id} is already running a review")
            base_url = session.base_url
            # overrides apply to this run only; the session keeps its defaults
            pages, viewports = session.pages, session.viewports
            if "pages" in request.model_fields_set:
                check_page_names(request.pages)
                pages = list(request.pages)
            if "viewports" in request.model_fields_set:
                viewports = resolve_viewports(request.viewports)
        else:
            validate_url(request.url)
            await check_ssrf(request.url, allow_private=request.allow_private)
            check_page_names(request.pages)
            base_url = request.url.rstrip("/")
            pages, viewports = request.pages, resolve_viewports(request.viewports)

        report, skip = await self._resolve_report(request, session, base_url, pages, viewports)

        if session is None and request.persistent:
            session = await self._open_session(request, report, base_url, pages, viewports)
        if session is not None:
            return await self._run_session(session, request, report, pages, viewports, skip, abort, emit)

        auth_state = request.auth_state
        if request.login is not None:
            handle = await self.launcher.launch()
            try:
                auth_state = await perform_login(handle, base_url, request.login)
            finally:
                await handle.close()

        return await self.pipeline.run(
            report, base_url, pages, viewports,
            auth_state=auth_state, abort=abort, emit=emit, skip=skip, dry_run=request.dry_run,
        )

    async def _resolve_report(
        self,
        request: ReviewRequest,
        session: Optional[Session],
        base_url: str,
        pages: list[PageSpec],
        viewports: list,
    ) -> tuple[Report, set[str]]:
        """Load the report to resume, or create a new one."""
        report_id = request.report_id or (session.report_id if session else None)
        report = await self.repo.get_report(report_id) if report_id else None
        if report is None and request.report_id:
            raise SessionNotFoundError(f"Report not found: {request.report_id}")

        config = {
            "model": self.analysis.model,
            "viewports": [v.name for v in viewports],
            "dry_run": request.dry_run,
        }
        page_refs = [PageRef(name=p.name, path=p.path) for p in pages]

        if report is None:
            report = Report(
                base_url=base_url,
                config=config,
                pages=page_refs,
                total_expected=len(pages) * len(viewports),
            )
            return report, set()

        report.config = config
        report.pages = page_refs
        report.total_expected = len(pages) * len(viewports)
        skip = set(report.results) if request.skip_completed else set()
        logger.info(f"Resuming report {report.id} ({len(skip)} results kept)")
        return report, skip

    async def _open_session(
        self,
        request: ReviewRequest,
        report: Report,
        base_url: str,
        pages: list[PageSpec],
        viewports: list,
    ) -> Session:
        """Launch a browser for a new persistent session, logging in first if asked."""
        auth_state = request.auth_state
        handle = await self.launcher.launch()
        try:
            if request.login is not None:
                auth_state = await perform_login(handle, base_url, request.login)
            page = await handle.new_page(viewports[0], auth_state)
        except BaseException:
            await handle.close()
            raise

        session = Session(handle, page, base_url, pages, viewports, auth_state, report_id=report.id)
        self.supervisor.watch(session)
        return session

    async def _run_session(
        self,
        session: Session,
        request: ReviewRequest,
        report: Report,
        pages: list[PageSpec],
        viewports: list,
        skip: set[str],
        abort: asyncio.Event,
        emit: Optional[Emit],
    ) -> Report:
        """Run a review on a session's browser, then settle who owns that browser.

        A FRESH session belongs to this run: it is registered only if the run
        completes unaborted, otherwise its browser is closed here. A RESUMED
        session belongs to the registry and its browser is never closed by a run.
        """
        fresh = session.origin is SessionOrigin.FRESH
        try:
            report = await self.pipeline.run(
                report, session.base_url, pages, viewports,
                auth_state=session.auth_state, session=session, abort=abort, emit=emit, skip=skip,
                login=None if fresh else request.login, dry_run=request.dry_run,
            )
        except BaseException:
            if fresh:
                await self._discard(session)
            raise

        if fresh:
            if abort.is_set() or report.status != "complete" or session.state is SessionState.REMOVED:
                logger.info(f"Not keeping session {session.id} (run {report.status}), closing browser")
                await self._discard(session)
                return report
            self.registry.register(session)
        session.report_id = report.id

        if request.poll_interval is not None and session.state is SessionState.LIVE:
            self.poller.start(session, request.poll_interval)
        await notify(emit, "session", sessionId=session.id, reportId=report.id,
                     polling=session.poll_task is not None)
        return report

    async def _discard(self, session: Session):
        session.state = SessionState.REMOVED
        await session.browser.close()

    # ── Sessions ─────────────────────────────────────────────────────────────

    def list_sessions(self) -> list[SessionInfo]:
        return self.registry.list_active()

    async def stop_session(self, session_id: str) -> bool:
        """Remove a session and close its browser. Stopping twice is a no-op."""
        session = self.registry.remove(session_id)
        if session is None:
            return False
        try:
            await session.browser.close()
        except Exception as e:
            logger.warning(f"Error closing browser for session {session_id}: {e}")
        return True

    def set_polling(self, session_id: str, interval_seconds: Optional[int]) -> SessionInfo:
        """Start polling at `interval_seconds`, or stop it when None."""
        session = self._get_session(session_id)
        if interval_seconds is None:
            self.poller.stop(session)
        else:
            self.poller.start(session, interval_seconds)
        return session.info()

    async def run_cycle(self, session_id: str) -> CycleStats:
        session = self._get_session(session_id)
        stats = await self.poller.run_cycle(session)
        if stats is None:
            raise SessionBusyError(f"Session {session_id} is busy")
        return stats

    # ── Discovery ────────────────────────────────────────────────────────────

    async def discover(
        self,
        request: DiscoverRequest,
        emit: Optional[Emit] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> DiscoveryResult:
        auth_state = request.auth_state
        if request.login is not None:
            validate_url(request.url)
            await check_ssrf(request.url, allow_private=request.allow_private)
            handle = await self.launcher.launch()
            try:
                auth_state = await perform_login(handle, request.url.rstrip("/"), request.login)
            finally:
                await handle.close()

        return await self.crawler.discover(
            request.url,
            max_pages=request.max_pages,
            auth_state=auth_state,
            abort=abort,
            emit=emit,
            allow_private=request.allow_private,
        )

    def get_config(self) -> dict:
        return {
            "ollama_url": OLLAMA_URL,
            "model": self.analysis.model,
            "timeout": ANALYSIS_TIMEOUT,
            "browser": self.launcher.engine,
            "viewports": {name: {"width": w, "height": h} for name, (w, h) in VIEWPORTS.items()},
            "min_poll_interval": MIN_POLL_INTERVAL_SECONDS,
        }


# ── HTTP Helpers ─────────────────────────────────────────────────────────────


def _error_response(e: Exception) -> web.Response:
    if isinstance(e, ConfigError):
        status = 400
    elif isinstance(e, SessionNotFoundError):
        status = 404
    elif isinstance(e, SessionBusyError):
        status = 409
    else:
        status = 500
    return web.json_response({"error": str(e)}, status=status)


async def _read_json(request: web.Request) -> dict:
    if not request.content_length:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON body: {e}")
    if not isinstance(body, dict):
        raise ConfigError("Request body must be a JSON object")
    return body


async def _open_stream(request: web.Request) -> tuple[web.StreamResponse, Emit]:
    """Start an SSE response and return it with an emitter writing to it."""
    response = web.StreamResponse(
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )
    await response.prepare(request)

    async def emit(event: str, **data):
        await response.write(f"event: {event}\ndata: {json.dumps(data)}\n\n".encode("utf-8"))

    return response, emit


def _log_task_result(task: asyncio.Task):
    if task.cancelled():
        return
    error = task.exception()
    if error is not None and not isinstance(error, UiReviewError):
        logger.error(f"Background run failed: {error}", exc_info=error)


async def _stream_operation(operation, emit: Emit, abort: asyncio.Event):
    """Run `operation` as its own task so a client disconnect only sets `abort`."""
    task = asyncio.ensure_future(operation)
    task.add_done_callback(_log_task_result)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        logger.info("Client disconnected, aborting run at the next checkpoint")
        abort.set()
        raise
    except UiReviewError as e:
        await notify(emit, "error", message=str(e))
    except Exception as e:
        logger.error(f"Streamed operation failed: {e}", exc_info=True)
        await notify(emit, "error", message=str(e))
    return None


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def handle_config(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    return web.json_response(mgr.get_config())


async def handle_health(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    try:
        models = await mgr.analysis.health_check()
    except UiReviewError as e:
        return web.json_response({"ok": False, "error": str(e)}, status=503)
    return web.json_response({
        "ok": True,
        "models": models,
        "model_available": any(m.startswith(mgr.analysis.model) for m in models),
        "sessions": len(mgr.registry),
        "reports": await mgr.repo.get_report_count(),
    })


async def handle_list_reports(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    try:
        limit = int(request.query.get("limit", "100"))
    except ValueError:
        return web.json_response({"error": "limit must be an integer"}, status=400)
    reports = await mgr.repo.list_reports(limit)
    return web.json_response({"reports": [r.model_dump() for r in reports]})


async def handle_get_report(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    report_id = request.match_info["report_id"]
    report = await mgr.repo.get_report(report_id)
    if report is None:
        return web.json_response({"error": f"Report not found: {report_id}"}, status=404)
    return web.json_response({"report": report.model_dump()})


async def handle_review(request: web.Request) -> web.StreamResponse:
    mgr: SessionManager = request.app["manager"]
    try:
        review = ReviewRequest(**await _read_json(request))
    except ConfigError as e:
        return _error_response(e)
    except ValidationError as e:
        return web.json_response({"error": f"Invalid params: {e}"}, status=400)

    response, emit = await _open_stream(request)
    abort = asyncio.Event()
    await _stream_operation(mgr.start_review(review, emit=emit, abort=abort), emit, abort)
    return response


async def handle_discover(request: web.Request) -> web.StreamResponse:
    mgr: SessionManager = request.app["manager"]
    try:
        params = DiscoverRequest(**await _read_json(request))
    except ConfigError as e:
        return _error_response(e)
    except ValidationError as e:
        return web.json_response({"error": f"Invalid params: {e}"}, status=400)

    response, emit = await _open_stream(request)
    abort = asyncio.Event()
    result = await _stream_operation(mgr.discover(params, emit=emit, abort=abort), emit, abort)
    if result is not None:
        await notify(emit, "done", **result.model_dump())
    return response


async def handle_list_sessions(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    return web.json_response({"sessions": [s.model_dump() for s in mgr.list_sessions()]})


async def handle_stop_session(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    session_id = request.match_info["session_id"]
    stopped = await mgr.stop_session(session_id)
    message = "Session stopped." if stopped else "Session was not running."
    return web.json_response({"stopped": stopped, "message": message})


async def handle_set_polling(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    try:
        body = await _read_json(request)
        interval = body.get("interval_seconds")
        if interval is not None and not isinstance(interval, int):
            raise ConfigError("interval_seconds must be an integer or null")
        info = mgr.set_polling(request.match_info["session_id"], interval)
    except UiReviewError as e:
        return _error_response(e)
    return web.json_response({"session": info.model_dump()})


async def handle_run_cycle(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    try:
        stats = await mgr.run_cycle(request.match_info["session_id"])
    except UiReviewError as e:
        return _error_response(e)
    except Exception as e:
        logger.error(f"Poll cycle failed: {e}", exc_info=True)
        return _error_response(e)
    return web.json_response({"cycle": stats.to_dict()})


# ── App Factory ──────────────────────────────────────────────────────────────


async def on_startup(app: web.Application):
    ensure_dirs()
    mgr = app.get("manager") or SessionManager()
    await mgr.setup()
    app["manager"] = mgr
    logger.info(f"Session Manager started on {SESSION_MANAGER_HOST}:{SESSION_MANAGER_PORT}")


async def on_cleanup(app: web.Application):
    mgr: SessionManager = app["manager"]
    await mgr.cleanup()
    logger.info("Session Manager stopped.")


def create_app(manager: Optional[SessionManager] = None) -> web.Application:
    app = web.Application()
    if manager is not None:
        app["manager"] = manager
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get("/api/config", handle_config)
    app.router.add_get("/api/health", handle_health)
    app.router.add_get("/api/reports", handle_list_reports)
    app.router.add_get("/api/reports/{report_id}", handle_get_report)
    app.router.add_post("/api/review", handle_review)
    app.router.add_post("/api/discover", handle_discover)
    app.router.add_get("/api/sessions", handle_list_sessions)
    app.router.add_post("/api/sessions/{session_id}/stop", handle_stop_session)
    app.router.add_post("/api/sessions/{session_id}/poll", handle_set_polling)
    app.router.add_post("/api/sessions/{session_id}/cycle", handle_run_cycle)

    return app


def main():
    """Run the session manager as a standalone HTTP service."""
    validate_settings()
    logger.info(f"Using {BROWSER_ENGINE} browser, analysis model {OLLAMA_MODEL} at {OLLAMA_URL}")
    app = create_app()
    web.run_app(app, host=SESSION_MANAGER_HOST, port=SESSION_MANAGER_PORT)


if __name__ == "__main__":
    main()
