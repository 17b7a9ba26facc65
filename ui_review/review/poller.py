"""Poll cycles: periodic re-capture of a persistent session's pages.

Each cycle compares fresh screenshots with the stored baselines and only
sends changed pages back through analysis.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import asdict, dataclass
from typing import Optional

from ..config import MIN_POLL_INTERVAL_SECONDS
from ..database.repository import ReportRepository
from ..database.screenshots import ScreenshotStore
from ..errors import BrowserCrashedError, ConfigError, TokenGenerationError
from ..models.report import result_key
from ..session_manager.capture import capture_page
from ..session_manager.registry import Session, SessionState
from ..session_manager.supervisor import CrashSupervisor
from .diff import has_changed
from .pipeline import ReviewPipeline
from .tokens import inject_token

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


@dataclass
class CycleStats:
    captured: int = 0
    unchanged: int = 0
    analyzed: int = 0
    errors: int = 0
    crashed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class PollCycleEngine:
    """Runs change-detection cycles for registered sessions."""

    def __init__(
        self,
        pipeline: ReviewPipeline,
        repo: ReportRepository,
        store: ScreenshotStore,
        supervisor: CrashSupervisor,
        min_interval: int = MIN_POLL_INTERVAL_SECONDS,
    ):
        self._pipeline = pipeline
        self._repo = repo
        self._store = store
        self._supervisor = supervisor
        self._min_interval = min_interval

    # ── Timer ────────────────────────────────────────────────────────────────

    def start(self, session: Session, interval_seconds: int):
        """Start (or restart) polling a session every `interval_seconds`.

        Raises:
            ConfigError: interval below the configured minimum.
        """
        if interval_seconds < self._min_interval:
            raise ConfigError(
                f"Poll interval must be at least {self._min_interval} seconds, got {interval_seconds}"
            )
        session.cancel_polling()
        session.poll_interval = interval_seconds
        session.poll_task = asyncio.ensure_future(self._loop(session, interval_seconds))
        logger.info(f"Polling session {session.id} every {interval_seconds}s")

    def stop(self, session: Session):
        if session.poll_task is not None:
            logger.info(f"Stopped polling session {session.id}")
        session.cancel_polling()

    async def _loop(self, session: Session, interval: int):
        while True:
            await asyncio.sleep(interval)
            if session.state is SessionState.REMOVED:
                return
            try:
                stats = await self.run_cycle(session)
                if stats is not None:
                    logger.info(f"Poll cycle for {session.id}: {stats.to_dict()}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Poll cycle for session {session.id} failed: {e}", exc_info=True)

    # ── Cycle ────────────────────────────────────────────────────────────────

    async def run_cycle(self, session: Session) -> Optional[CycleStats]:
        """Re-capture every page×viewport once. Returns None if the session is busy."""
        if session.state is not SessionState.LIVE or not session.try_acquire():
            logger.info(f"Session {session.id} is busy, skipping poll cycle")
            return None

        stats = CycleStats()
        crashed_handle = None
        try:
            report = await self._repo.get_report(session.report_id) if session.report_id else None
            if report is None:
                logger.warning(f"Session {session.id} has no stored report, nothing to poll")
                return stats

            for page in session.pages:
                try:
                    grant = await self._pipeline.fetch_token(page, session.base_url, session.auth_state)
                except TokenGenerationError as e:
                    message = f"Token generation failed: {e}"
                    logger.warning(f"[{page.name}] {message}")
                    for viewport in session.viewports:
                        report.record_error(result_key(page.name, viewport.name), message)
                        stats.errors += 1
                    await self._repo.save_report(report)
                    continue

                page_url = session.base_url.rstrip("/") + page.path
                target_url = inject_token(page_url, grant)

                for viewport in session.viewports:
                    key = result_key(page.name, viewport.name)
                    handle = session.browser
                    try:
                        buffer = await capture_page(
                            session.page, target_url, viewport, page.actions, handle=handle
                        )
                        session.mark_captured()
                        stats.captured += 1

                        # keys without a result are re-analyzed even when the page is unchanged
                        baseline = self._store.load(report.id, page.name, viewport.name)
                        if key in report.results and baseline is not None and not has_changed(baseline, buffer):
                            stats.unchanged += 1
                            continue

                        await self._pipeline.analyze_capture(report, page, viewport, page_url, buffer)
                        self._store.save(report.id, page.name, viewport.name, buffer)
                        stats.analyzed += 1

                    except BrowserCrashedError as e:
                        stats.errors += 1
                        stats.crashed = True
                        crashed_handle = handle
                        report.record_error(key, str(e))
                        await self._repo.save_report(report)
                        logger.warning(f"Browser crashed during poll cycle for {session.id}")
                        break
                    except Exception as e:
                        message = str(e)
                        if grant is not None:
                            message = message.replace(grant.value, "****")
                        stats.errors += 1
                        report.record_error(key, message)
                        await self._repo.save_report(report)
                        logger.warning(f"[{key}] poll capture failed: {message}")

                if stats.crashed:
                    break

            report.touch()
            await self._repo.save_report(report)
        finally:
            session.release()

        if stats.crashed:
            await self._supervisor.handle_crash(session, crashed_handle)
        return stats
