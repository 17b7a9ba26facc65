"""Screenshot capture on an already-open page: navigate, interact, snapshot."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import ACTION_TIMEOUT, NAVIGATION_TIMEOUT, SETTLE_DELAY_MS
from ..constants import CRASH_INDICATORS
from ..errors import BrowserCrashedError, CaptureError
from ..models.page import Action, ViewportSpec

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def is_crash(error: BaseException, handle=None) -> bool:
    """Tell a dead browser process apart from an ordinary page failure."""
    if handle is not None and not handle.is_connected:
        return True
    message = str(error)
    return any(indicator in message for indicator in CRASH_INDICATORS)


async def run_action(page: Page, action: Action):
    """Run one interaction step under its own timeout."""
    timeout = action.timeout_ms or ACTION_TIMEOUT

    if action.type == "click":
        await page.click(action.selector, timeout=timeout)
    elif action.type == "fill":
        await page.fill(action.selector, action.value, timeout=timeout)
    elif action.type == "hover":
        await page.hover(action.selector, timeout=timeout)
    elif action.type == "wait_for":
        await page.wait_for_selector(action.selector, timeout=timeout)
    elif action.type == "select":
        await page.select_option(action.selector, action.value, timeout=timeout)
    elif action.type == "press":
        if action.selector:
            await page.press(action.selector, action.key, timeout=timeout)
        else:
            await page.keyboard.press(action.key)
    elif action.type == "pause":
        await asyncio.sleep(action.ms / 1000)
    elif action.type == "wait_for_idle":
        await page.wait_for_load_state("networkidle", timeout=timeout)


async def _navigate(page: Page, url: str):
    try:
        await page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT)
    except PlaywrightTimeoutError:
        logger.warning("networkidle timed out, retrying with load...")
        await page.goto(url, wait_until="load", timeout=NAVIGATION_TIMEOUT * 2)


async def capture_page(
    page: Page,
    url: str,
    viewport: ViewportSpec,
    actions: Optional[list[Action]] = None,
    handle=None,
) -> bytes:
    """Capture a viewport screenshot (PNG) of `url` on an existing page.

    Args:
        page: Page to drive. Reused session pages are resized to the viewport.
        url: Fully built target URL (token already injected).
        viewport: Viewport to capture at.
        actions: Interaction steps run in order before the screenshot.
        handle: BrowserHandle owning the page, used to detect a dead process.

    Raises:
        BrowserCrashedError: the browser process went away.
        CaptureError: navigation, interaction or screenshot failed.
    """
    try:
        await page.set_viewport_size({"width": viewport.width, "height": viewport.height})
        await _navigate(page, url)

        for i, action in enumerate(actions or []):
            try:
                await run_action(page, action)
            except Exception as e:
                if is_crash(e, handle):
                    raise
                raise CaptureError(f"Action {i + 1} ({action.type}) failed: {e}") from e

        await page.evaluate("() => document.fonts.ready")
        await asyncio.sleep(SETTLE_DELAY_MS / 1000)

        return await page.screenshot(type="png", animations="disabled")

    except CaptureError:
        raise
    except Exception as e:
        if is_crash(e, handle):
            raise BrowserCrashedError(f"Browser crashed during capture: {e}") from e
        raise CaptureError(f"Screenshot capture failed: {e}") from e
