"""Browser launch and lifetime: Camoufox by default, Playwright Chromium on request."""

from __future__ import annotations

import logging
import sys
from typing import Any, Callable, Optional

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import Browser, Page, async_playwright

from ..config import BROWSER_ENGINE, BROWSER_HEADLESS, IGNORE_HTTPS_ERRORS, NAVIGATION_TIMEOUT
from ..errors import CaptureError
from ..models.page import ViewportSpec

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class BrowserHandle:
    """A launched browser process and whatever owns its lifetime.

    The owner is the AsyncCamoufox context manager or the Playwright driver
    that started the browser; closing the handle tears both down.
    """

    def __init__(self, browser: Browser, owner: Any = None, engine: str = BROWSER_ENGINE):
        self._browser = browser
        self._owner = owner
        self._engine = engine
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return not self._closed and self._browser.is_connected()

    def on_disconnected(self, callback: Callable[[], None]):
        """Call `callback` (synchronously, no arguments) once the browser goes away."""
        self._browser.on("disconnected", lambda _browser: callback())

    async def new_page(
        self,
        viewport: Optional[ViewportSpec] = None,
        auth_state: Optional[dict] = None,
    ) -> Page:
        """Open a page in a fresh context seeded with the stored auth state."""
        options: dict[str, Any] = {"ignore_https_errors": IGNORE_HTTPS_ERRORS}
        if viewport is not None:
            options["viewport"] = {"width": viewport.width, "height": viewport.height}
        if auth_state:
            options["storage_state"] = auth_state

        context = await self._browser.new_context(**options)
        page = await context.new_page()
        page.set_default_timeout(NAVIGATION_TIMEOUT)
        return page

    async def close_page(self, page: Page):
        """Close a page together with its context."""
        await page.context.close()

    async def storage_state(self, page: Page) -> dict:
        return await page.context.storage_state()

    async def close(self):
        """Gracefully close the browser. Safe to call on a dead handle."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"Closing {self._engine} browser...")

        try:
            if self._browser.is_connected():
                await self._browser.close()
        except Exception as e:
            logger.warning(f"Error closing browser: {e}")

        try:
            if isinstance(self._owner, AsyncCamoufox):
                await self._owner.__aexit__(None, None, None)
            elif self._owner is not None:
                await self._owner.stop()
        except Exception as e:
            logger.warning(f"Error stopping {self._engine} driver: {e}")
        finally:
            self._owner = None


class BrowserLauncher:
    """Launches browsers for reviews, sessions, crash recovery and discovery."""

    def __init__(self, engine: str = BROWSER_ENGINE, headless: bool = BROWSER_HEADLESS):
        self.engine = engine
        self.headless = headless

    async def launch(self) -> BrowserHandle:
        logger.info(f"Launching {self.engine} (headless={self.headless})...")
        try:
            if self.engine == "chromium":
                driver = await async_playwright().start()
                try:
                    browser = await driver.chromium.launch(headless=self.headless)
                except Exception:
                    await driver.stop()
                    raise
                return BrowserHandle(browser, owner=driver, engine=self.engine)

            camoufox = AsyncCamoufox(headless=self.headless, humanize=False)
            browser = await camoufox.__aenter__()
            return BrowserHandle(browser, owner=camoufox, engine=self.engine)

        except Exception as e:
            message = str(e)
            if "Executable doesn't exist" in message or "browserType.launch" in message:
                hint = (
                    "python -m playwright install chromium"
                    if self.engine == "chromium"
                    else "python -m camoufox fetch"
                )
                raise CaptureError(f"{self.engine} browser not installed. Run: {hint}") from e
            raise CaptureError(f"Failed to launch {self.engine} browser: {e}") from e
