"""Persistent browser sessions and the registry that owns them."""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..models.page import PageSpec, ViewportSpec
from ..models.session import SessionInfo

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SessionState(str, Enum):
    LIVE = "live"
    RELAUNCHING = "relaunching"
    REMOVED = "removed"


class SessionOrigin(str, Enum):
    FRESH = "fresh"  # the run that launched the browser owns it until registration
    RESUMED = "resumed"  # a later run borrowing a registered browser


class Session:
    """A live browser plus the review targets it was created for."""

    def __init__(
        self,
        browser,
        page,
        base_url: str,
        pages: list[PageSpec],
        viewports: list[ViewportSpec],
        auth_state: Optional[dict] = None,
        report_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self.id = session_id or uuid.uuid4().hex
        self.browser = browser
        self.page = page
        self.base_url = base_url
        self.pages = list(pages)
        self.viewports = list(viewports)
        self.auth_state = auth_state
        self.report_id = report_id
        self.origin = SessionOrigin.FRESH
        self.state = SessionState.LIVE
        self.busy = False
        self.poll_task: Optional[asyncio.Task] = None
        self.poll_interval: Optional[int] = None
        self.relaunches_since_capture = 0
        self.created_at = datetime.now(timezone.utc).isoformat()

    def try_acquire(self) -> bool:
        """Mark the session busy. Returns False if a run already holds it."""
        if self.busy:
            return False
        self.busy = True
        return True

    def release(self):
        self.busy = False

    def mark_captured(self):
        """A capture succeeded on the current browser, so the next crash may relaunch again."""
        self.relaunches_since_capture = 0

    def swap_browser(self, browser, page):
        self.browser = browser
        self.page = page
        self.state = SessionState.LIVE
        self.relaunches_since_capture += 1

    def cancel_polling(self):
        if self.poll_task is not None:
            self.poll_task.cancel()
        self.poll_task = None
        self.poll_interval = None

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            base_url=self.base_url,
            started_at=self.created_at,
            busy=self.busy,
            polling=self.poll_task is not None,
            poll_interval=self.poll_interval,
            state=self.state.value,
            report_id=self.report_id,
        )


class SessionRegistry:
    """Owns the mapping from session id to live session.

    Only the registry, the crash supervisor and an explicit stop may replace
    or close a registered session's browser.
    """

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def register(self, session: Session):
        session.state = SessionState.LIVE
        session.origin = SessionOrigin.RESUMED
        self._sessions[session.id] = session
        logger.info(f"Registered session {session.id} for {session.base_url}")

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        """Drop a session, cancelling its poll task. The caller closes the browser.

        Removing an unknown id is a no-op and returns None.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session.cancel_polling()
        session.state = SessionState.REMOVED
        logger.info(f"Removed session {session_id}")
        return session

    def list_active(self) -> list[SessionInfo]:
        return [s.info() for s in self._sessions.values()]

    async def shutdown(self):
        """Cancel every poll task and close every browser. Best-effort."""
        for session_id in list(self._sessions):
            session = self.remove(session_id)
            if session is None:
                continue
            try:
                await session.browser.close()
            except Exception as e:
                logger.warning(f"Error closing browser for session {session_id}: {e}")
