"""Review pipeline: capture -> token -> analysis -> structuring -> persistence.

One run walks the page×viewport matrix strictly in order. The analysis
server is a single-capacity resource, so no two analysis calls of a run are
ever in flight together. Failures for one key are recorded and the run moves
on; only failures that make the whole run pointless end it with ``error``.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..database.repository import ReportRepository
from ..database.screenshots import ScreenshotStore
from ..errors import (
    AnalysisError,
    BrowserCrashedError,
    CaptureError,
    LoginError,
    SessionBusyError,
    TokenGenerationError,
)
from ..models.page import Action, LoginSpec, PageSpec, ViewportSpec
from ..models.report import Report, ReviewResult, result_key, sanitize_result
from ..session_manager.browser import BrowserLauncher
from ..session_manager.capture import capture_page, is_crash
from ..session_manager.registry import Session
from ..session_manager.supervisor import CrashSupervisor
from .analysis import OllamaClient, parse_vlm_json
from .prompts import REFORMAT_SYSTEM, REVIEW_SYSTEM, reformat_prompt, review_prompt
from .tokens import TokenGrant, TokenInjector, inject_token, perform_login

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

Emit = Callable[..., Awaitable[None]]

DRY_RUN_SUMMARY = "Dry run, no analysis performed."


class RunAborted(Exception):
    """The controlling client went away; stop at the next checkpoint."""


async def _no_emit(event: str, **data: Any):
    return None


async def notify(emit: Optional[Emit], event: str, **data: Any):
    """Deliver an event to the client. Delivery failures never affect the run."""
    if emit is None:
        return
    try:
        await emit(event, **data)
    except Exception as e:
        logger.debug(f"Dropped '{event}' event: {e}")


def _redact(message: str, grant: Optional[TokenGrant]) -> str:
    if grant is not None and grant.value:
        return message.replace(grant.value, "****")
    return message


async def _cancellable(coro: Awaitable, abort: Optional[asyncio.Event]):
    """Await `coro`, cancelling it if the abort event fires first."""
    if abort is None:
        return await coro
    if abort.is_set():
        if asyncio.iscoroutine(coro):
            coro.close()
        raise RunAborted()

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Cancelled call ended with {type(e).__name__}")
    raise RunAborted()


class _ThrowawayBrowser:
    """Browser for a non-persistent run: a fresh context per capture.

    After a crash the handle is discarded and the next capture relaunches.
    """

    def __init__(self, launcher: BrowserLauncher):
        self._launcher = launcher
        self.handle = None

    async def start(self):
        self.handle = await self._launcher.launch()

    async def capture(
        self,
        url: str,
        viewport: ViewportSpec,
        actions: list[Action],
        auth_state: Optional[dict],
    ) -> bytes:
        if self.handle is None:
            await self.start()
        handle = self.handle

        try:
            page = await handle.new_page(viewport, auth_state)
        except Exception as e:
            if is_crash(e, handle):
                raise BrowserCrashedError(f"Browser crashed before capture: {e}") from e
            raise CaptureError(f"Could not open a page: {e}") from e

        try:
            return await capture_page(page, url, viewport, actions, handle=handle)
        finally:
            try:
                await handle.close_page(page)
            except Exception as e:
                logger.debug(f"Could not close capture page: {e}")

    async def discard(self):
        handle, self.handle = self.handle, None
        if handle is not None:
            try:
                await handle.close()
            except Exception as e:
                logger.warning(f"Error closing throwaway browser: {e}")


class ReviewPipeline:
    """Runs reviews over a page×viewport matrix and keeps the report current."""

    def __init__(
        self,
        analysis: OllamaClient,
        repo: ReportRepository,
        store: ScreenshotStore,
        launcher: BrowserLauncher,
        supervisor: Optional[CrashSupervisor] = None,
        tokens: Optional[TokenInjector] = None,
    ):
        self._analysis = analysis
        self._repo = repo
        self._store = store
        self._launcher = launcher
        self._supervisor = supervisor
        self._tokens = tokens or TokenInjector()

    # ── Entry point ──────────────────────────────────────────────────────────

    async def run(
        self,
        report: Report,
        base_url: str,
        pages: list[PageSpec],
        viewports: list[ViewportSpec],
        auth_state: Optional[dict] = None,
        session: Optional[Session] = None,
        abort: Optional[asyncio.Event] = None,
        emit: Optional[Emit] = None,
        skip: Iterable[str] = (),
        login: Optional[LoginSpec] = None,
        dry_run: bool = False,
    ) -> Report:
        """Review every page×viewport pair and return the updated report.

        Args:
            report: Report to mutate (new or resumed).
            base_url: Site origin the page paths are appended to.
            pages: Pages in review order.
            viewports: Viewports in review order.
            auth_state: Browser storage state used for throwaway pages and tokens.
            session: Persistent session whose page is reused. Must not be busy.
            abort: Set when the controlling client disconnects.
            emit: Async callable receiving (event, **data) progress events.
            skip: Result keys that are already done and must not be redone.
            login: Log the session's browser in again before the matrix.
            dry_run: Capture and store screenshots without calling the analysis server.

        Raises:
            SessionBusyError: the session is already running a review or poll cycle.
        """
        emit = emit or _no_emit
        abort = abort or asyncio.Event()
        skip = set(skip)

        if session is not None and not session.try_acquire():
            raise SessionBusyError(f"Session {session.id} is already running a review")

        throwaway = None if session is not None else _ThrowawayBrowser(self._launcher)
        try:
            report.status = "running"
            report.error = None
            report.touch()
            await self._repo.save_report(report)
            await notify(emit, "report-id", reportId=report.id)

            if session is not None and login is not None:
                auth_state = await self._relogin(session, base_url, login, viewports)

            if not dry_run:
                await notify(emit, "progress", status="health-check",
                             message=f"Checking analysis server at {self._analysis.base_url}...")
                await _cancellable(self._analysis.health_check(), abort)

                await notify(emit, "progress", status="prewarm",
                             message=f"Prewarming {self._analysis.model}...")
                await _cancellable(self._analysis.prewarm(), abort)

            if throwaway is not None:
                await throwaway.start()

            await self._run_matrix(
                report, base_url, pages, viewports, auth_state, session, throwaway, abort, emit, skip,
                dry_run,
            )
            report.status = "interrupted" if abort.is_set() else "complete"

        except RunAborted:
            report.status = "interrupted"
        except Exception as e:
            expected = isinstance(e, (AnalysisError, CaptureError, LoginError))
            logger.error(f"Review {report.id} failed: {e}", exc_info=not expected)
            report.status = "error"
            report.error = str(e)
        finally:
            if session is not None:
                session.release()
            if throwaway is not None:
                await throwaway.discard()

        report.touch()
        await self._repo.save_report(report)
        logger.info(
            f"Review {report.id} {report.status}: {len(report.results)} results, {len(report.errors)} errors"
        )

        if report.status == "error":
            await notify(emit, "error", message=report.error, reportId=report.id)
        else:
            await notify(emit, "done", summary=report.summary.model_dump(),
                         reportId=report.id, status=report.status)
        return report

    # ── Matrix ───────────────────────────────────────────────────────────────

    async def _run_matrix(
        self,
        report: Report,
        base_url: str,
        pages: list[PageSpec],
        viewports: list[ViewportSpec],
        auth_state: Optional[dict],
        session: Optional[Session],
        throwaway: Optional[_ThrowawayBrowser],
        abort: asyncio.Event,
        emit: Emit,
        skip: set[str],
        dry_run: bool = False,
    ):
        for page in pages:
            if abort.is_set():
                break

            pending = [v for v in viewports if result_key(page.name, v.name) not in skip]

            grant = None
            if page.token_auth is not None and pending:
                try:
                    grant = await self.fetch_token(page, base_url, auth_state)
                except TokenGenerationError as e:
                    await self._fail_page(report, page, pending, f"Token generation failed: {e}", emit)
                    continue

            for viewport in viewports:
                if abort.is_set():
                    break

                key = result_key(page.name, viewport.name)
                if key in skip:
                    await notify(emit, "progress", status="skipped", page=page.name,
                                 viewport=viewport.name,
                                 message=f"Skipping {page.name} ({viewport.name}), already reviewed")
                    if key in report.results:
                        await notify(emit, "result", page=page.name, viewport=viewport.name,
                                     data=report.results[key].model_dump(), cached=True)
                    continue

                await self._review_one(
                    report, page, viewport, base_url, grant, auth_state, session, throwaway, abort, emit,
                    dry_run,
                )

    async def _review_one(
        self,
        report: Report,
        page: PageSpec,
        viewport: ViewportSpec,
        base_url: str,
        grant: Optional[TokenGrant],
        auth_state: Optional[dict],
        session: Optional[Session],
        throwaway: Optional[_ThrowawayBrowser],
        abort: asyncio.Event,
        emit: Emit,
        dry_run: bool = False,
    ):
        key = result_key(page.name, viewport.name)
        page_url = base_url.rstrip("/") + page.path
        target_url = inject_token(page_url, grant)
        handle = session.browser if session is not None else None

        try:
            await notify(emit, "progress", status="capturing", page=page.name, viewport=viewport.name,
                         message=f"Capturing {page.name} at {viewport.name}...")
            if session is not None:
                buffer = await capture_page(
                    session.page, target_url, viewport, page.actions, handle=handle
                )
                session.mark_captured()
            else:
                buffer = await throwaway.capture(target_url, viewport, page.actions, auth_state)

            self._store.save(report.id, page.name, viewport.name, buffer)
            await notify(emit, "progress", status="captured", page=page.name, viewport=viewport.name,
                         message=f"Screenshot {len(buffer) // 1024}KB")

            if dry_run:
                result = sanitize_result(
                    {"issues": [], "summary": DRY_RUN_SUMMARY}, url=page_url, viewport=viewport.name
                )
                await self._commit(report, page, viewport, result, emit)
            else:
                await self.analyze_capture(report, page, viewport, page_url, buffer, abort=abort, emit=emit)

        except RunAborted:
            raise
        except BrowserCrashedError as e:
            await self._fail_key(report, page, viewport, _redact(str(e), grant), emit)
            if session is None:
                await throwaway.discard()
                return
            recovered = self._supervisor is not None and await self._supervisor.handle_crash(session, handle)
            if not recovered:
                raise BrowserCrashedError("Browser crashed and could not be relaunched") from e
        except Exception as e:
            logger.warning(f"[{key}] failed: {_redact(str(e), grant)}")
            await self._fail_key(report, page, viewport, _redact(str(e), grant), emit)

    # ── Steps shared with poll cycles ────────────────────────────────────────

    async def fetch_token(
        self, page: PageSpec, base_url: str, auth_state: Optional[dict]
    ) -> Optional[TokenGrant]:
        return await self._tokens.generate_token(page, base_url, auth_state)

    async def analyze_capture(
        self,
        report: Report,
        page: PageSpec,
        viewport: ViewportSpec,
        page_url: str,
        buffer: bytes,
        abort: Optional[asyncio.Event] = None,
        emit: Optional[Emit] = None,
    ) -> ReviewResult:
        """Analyze a captured screenshot, structure the answer and commit it."""
        await notify(emit, "progress", status="analyzing", page=page.name, viewport=viewport.name,
                     message=f"Analyzing {page.name} ({viewport.name}) with {self._analysis.model}...")

        raw = await _cancellable(
            self._analysis.analyze(REVIEW_SYSTEM, review_prompt(page_url, viewport), [buffer]), abort
        )
        result = await self._structure(raw, page, viewport, page_url, abort, emit)
        await self._commit(report, page, viewport, result, emit)
        return result

    async def _commit(
        self,
        report: Report,
        page: PageSpec,
        viewport: ViewportSpec,
        result: ReviewResult,
        emit: Optional[Emit],
    ):
        report.record_result(result_key(page.name, viewport.name), result)
        await self._repo.save_report(report)
        await notify(emit, "result", page=page.name, viewport=viewport.name, data=result.model_dump())

    async def _structure(
        self,
        raw: Any,
        page: PageSpec,
        viewport: ViewportSpec,
        page_url: str,
        abort: Optional[asyncio.Event],
        emit: Optional[Emit],
    ) -> ReviewResult:
        result = sanitize_result(raw, url=page_url, viewport=viewport.name)

        # Fallback 1: the summary text may itself hold the JSON
        if result.raw and result.summary:
            retried = parse_vlm_json(result.summary)
            if not retried.get("_raw"):
                result = sanitize_result(retried, url=page_url, viewport=viewport.name)

        # Fallback 2: ask the model to restructure its own text
        if result.raw and result.summary:
            await notify(emit, "progress", status="reformatting", page=page.name, viewport=viewport.name,
                         message=f"Reformatting raw response for {page.name} ({viewport.name})...")
            try:
                reformatted = await _cancellable(
                    self._analysis.analyze(REFORMAT_SYSTEM, reformat_prompt(result.summary), []), abort
                )
                if not reformatted.get("_raw") and isinstance(reformatted.get("issues"), list):
                    result = sanitize_result(reformatted, url=page_url, viewport=viewport.name)
            except AnalysisError as e:
                logger.warning(f"Reformat failed for {page.name} ({viewport.name}), keeping raw text: {e}")

        return result

    async def _relogin(
        self, session: Session, base_url: str, login: LoginSpec, viewports: list[ViewportSpec]
    ) -> dict:
        """Log the session's browser in again and move its page onto the new state."""
        auth_state = await perform_login(session.browser, base_url, login)
        fresh = await session.browser.new_page(viewports[0] if viewports else None, auth_state)
        stale, session.page = session.page, fresh
        session.auth_state = auth_state
        try:
            await session.browser.close_page(stale)
        except Exception as e:
            logger.debug(f"Could not close the pre-login page: {e}")
        return auth_state

    # ── Failure bookkeeping ──────────────────────────────────────────────────

    async def _fail_key(self, report: Report, page: PageSpec, viewport: ViewportSpec, message: str, emit: Emit):
        report.record_error(result_key(page.name, viewport.name), message)
        await self._repo.save_report(report)
        await notify(emit, "page-error", page=page.name, viewport=viewport.name, message=message)

    async def _fail_page(
        self, report: Report, page: PageSpec, viewports: list[ViewportSpec], message: str, emit: Emit
    ):
        logger.warning(f"[{page.name}] {message}")
        for viewport in viewports:
            report.record_error(result_key(page.name, viewport.name), message)
        await self._repo.save_report(report)
        for viewport in viewports:
            await notify(emit, "page-error", page=page.name, viewport=viewport.name, message=message)
