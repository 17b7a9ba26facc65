"""Crash supervisor: watches session browsers and relaunches them once.

Per session the supervisor drives LIVE -> RELAUNCHING -> (LIVE | REMOVED)
and re-arms its watch every time a new browser goes LIVE. It never talks to
a client; the crash may happen while nobody is connected.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from .browser import BrowserLauncher
from .registry import Session, SessionRegistry, SessionState

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class CrashSupervisor:
    """Relaunches crashed session browsers, restoring their auth state."""

    def __init__(self, registry: SessionRegistry, launcher: BrowserLauncher):
        self._registry = registry
        self._launcher = launcher
        # one recovery per dead browser handle
        self._recoveries: dict[int, asyncio.Task] = {}
        self.relaunch_attempts = 0

    def watch(self, session: Session):
        """Attach a disconnect observer to the session's current browser."""
        handle = session.browser
        handle.on_disconnected(lambda: self._on_disconnected(session, handle))

    def _on_disconnected(self, session: Session, handle):
        if session.state is SessionState.REMOVED or session.browser is not handle:
            return
        logger.warning(f"Browser for session {session.id} disconnected")
        self._recovery_for(session, handle)

    def _recovery_for(self, session: Session, handle) -> asyncio.Task:
        task = self._recoveries.get(id(handle))
        if task is None:
            task = asyncio.ensure_future(self._recover(session, handle))
            self._recoveries[id(handle)] = task
            task.add_done_callback(lambda _t: self._recoveries.pop(id(handle), None))
        return task

    async def handle_crash(self, session: Session, handle=None) -> bool:
        """Join (or start) recovery after a capture hit a dead browser.

        Args:
            session: Session whose capture failed.
            handle: Browser the failing capture ran on. When it is no longer
                the session's browser, recovery already happened. Without it,
                a LIVE session whose browser is still connected counts as
                recovered.

        Returns:
            True when the session has a live browser again.
        """
        if session.state is SessionState.REMOVED:
            return False
        if handle is None:
            if session.state is SessionState.LIVE and session.browser.is_connected:
                return True
            handle = session.browser
        elif session.browser is not handle:
            return session.state is SessionState.LIVE
        await asyncio.shield(self._recovery_for(session, handle))
        return session.state is SessionState.LIVE

    async def _recover(self, session: Session, dead_handle):
        if session.state is SessionState.REMOVED or session.browser is not dead_handle:
            return

        if session.relaunches_since_capture >= 1:
            logger.error(
                f"Session {session.id} crashed again before any successful capture, giving up"
            )
            await self._give_up(session, dead_handle)
            return

        session.state = SessionState.RELAUNCHING
        self.relaunch_attempts += 1
        logger.info(f"Relaunching browser for session {session.id}...")

        new_handle = None
        try:
            new_handle = await self._launcher.launch()
            first_viewport = session.viewports[0] if session.viewports else None
            new_page = await new_handle.new_page(first_viewport, session.auth_state)
        except Exception as e:
            logger.error(f"Relaunch failed for session {session.id}: {e}")
            if new_handle is not None:
                await self._close_quietly(new_handle)
            await self._give_up(session, dead_handle)
            return

        if session.state is SessionState.REMOVED:
            # stopped while we were relaunching
            await self._close_quietly(new_handle)
            return

        session.swap_browser(new_handle, new_page)
        self.watch(session)
        await self._close_quietly(dead_handle)
        logger.info(f"Session {session.id} recovered with a new browser")

    async def _give_up(self, session: Session, dead_handle):
        session.cancel_polling()
        if self._registry.remove(session.id) is None:
            # not registered yet (first run still in progress)
            session.state = SessionState.REMOVED
        await self._close_quietly(dead_handle)

    async def _close_quietly(self, handle: Optional[object]):
        try:
            await handle.close()
        except Exception as e:
            logger.warning(f"Error closing browser: {e}")
