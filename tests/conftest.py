"""Shared test fixtures: fake browsers, fake analysis server, PNG helpers."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import aiosqlite
import pytest
from PIL import Image

from ui_review.database.models import initialize_db
from ui_review.database.repository import ReportRepository
from ui_review.errors import CaptureError
from ui_review.models.page import ViewportSpec


def make_png(color: tuple[int, int, int] = (255, 255, 255), size: tuple[int, int] = (40, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


WHITE_PNG = make_png((255, 255, 255))
BLACK_PNG = make_png((0, 0, 0))

DESKTOP = ViewportSpec(name="desktop", width=1920, height=1080)
MOBILE = ViewportSpec(name="mobile", width=375, height=812)


@pytest.fixture(autouse=True)
def no_settle_delay(monkeypatch):
    monkeypatch.setattr("ui_review.session_manager.capture.SETTLE_DELAY_MS", 0)


# ── Browser fakes ────────────────────────────────────────────────────────────


class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status


class FakePage:
    """Records navigation and returns the owning handle's current screenshot."""

    def __init__(self, handle: "FakeBrowserHandle", viewport=None, auth_state=None):
        self.handle = handle
        self.viewport = viewport
        self.auth_state = auth_state
        self.url = "about:blank"
        self.visited: list[str] = []
        self.filled: dict[str, str] = {}
        self.closed = False

    def _check_alive(self):
        if not self.handle.is_connected:
            raise Exception("Target page, context or browser has been closed")

    async def set_viewport_size(self, size: dict):
        self._check_alive()
        self.viewport = size

    async def goto(self, url: str, wait_until: str = "load", timeout: int = 0):
        self._check_alive()
        if self.handle.crash_on_goto:
            self.handle.crash_on_goto = False
            self.handle.crash()
            raise Exception("Target page, context or browser has been closed")
        self.visited.append(url)
        self.handle.visited.append(url)
        self.url = url

        path = urlparse(url).path or "/"
        if self.handle.site is not None:
            if path not in self.handle.site:
                raise Exception(f"net::ERR_NAME_NOT_RESOLVED at {path}")
        return FakeResponse(200)

    async def fill(self, selector: str, value: str, timeout: int = 0):
        self._check_alive()
        self.filled[selector] = value

    async def click(self, selector: str, timeout: int = 0):
        self._check_alive()
        if self.handle.login_redirect and self.url.endswith(self.handle.login_path):
            self.url = self.url.replace(self.handle.login_path, self.handle.login_redirect)

    async def wait_for_load_state(self, state: str = "load", timeout: int = 0):
        self._check_alive()

    async def wait_for_timeout(self, ms: int):
        return None

    async def evaluate(self, script: str):
        self._check_alive()
        return None

    async def screenshot(self, type: str = "png", animations: str = "allow") -> bytes:
        self._check_alive()
        return self.handle.png

    async def content(self) -> str:
        path = urlparse(self.url).path or "/"
        return (self.handle.site or {}).get(path, "<html></html>")

    async def query_selector_all(self, selector: str) -> list:
        return []


class FakeBrowserHandle:
    """Stands in for BrowserHandle; `crash()` simulates the process dying."""

    def __init__(self, png: bytes = WHITE_PNG, site: Optional[dict[str, str]] = None):
        self.png = png
        self.site = site
        self.connected = True
        self.closed = False
        self.crash_on_goto = False
        self.login_path = "/login"
        self.login_redirect: Optional[str] = "/dashboard"
        self.pages: list[FakePage] = []
        self.visited: list[str] = []
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_connected(self) -> bool:
        return self.connected and not self.closed

    def on_disconnected(self, callback: Callable[[], None]):
        self._callbacks.append(callback)

    def trigger_disconnect(self):
        if not self.connected:
            return
        self.connected = False
        for callback in list(self._callbacks):
            callback()

    def crash(self):
        self.trigger_disconnect()

    async def new_page(self, viewport=None, auth_state=None) -> FakePage:
        if not self.is_connected:
            raise Exception("Browser has been closed")
        page = FakePage(self, viewport, auth_state)
        self.pages.append(page)
        return page

    async def close_page(self, page: FakePage):
        page.closed = True

    async def storage_state(self, page: FakePage) -> dict:
        return {"cookies": [{"name": "sid", "value": "s3cret", "domain": "example.test"}], "origins": []}

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.trigger_disconnect()


class FakeLauncher:
    """Launches FakeBrowserHandles and keeps every one it made."""

    def __init__(self, png: bytes = WHITE_PNG, site: Optional[dict[str, str]] = None):
        self.engine = "fake"
        self.png = png
        self.site = site
        self.handles: list[FakeBrowserHandle] = []
        self.fail = False

    async def launch(self) -> FakeBrowserHandle:
        if self.fail:
            raise CaptureError("Failed to launch fake browser")
        handle = FakeBrowserHandle(png=self.png, site=self.site)
        self.handles.append(handle)
        return handle


# ── Analysis fake ────────────────────────────────────────────────────────────

DEFAULT_ANALYSIS = {
    "summary": "Looks fine overall.",
    "issues": [
        {
            "severity": "warning",
            "category": "spacing",
            "location": "header",
            "description": "Logo touches the top edge",
            "recommendation": "Add padding",
        }
    ],
}


class FakeAnalysisClient:
    """Stands in for OllamaClient and records every analyze call."""

    def __init__(self, responses: Optional[list[Any]] = None):
        self.base_url = "http://localhost:11434"
        self.model = "fake-vl"
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []
        self.health_error: Optional[Exception] = None
        self.on_analyze: Optional[Callable[[], Awaitable[None]]] = None
        self.closed = False

    async def health_check(self) -> list[str]:
        if self.health_error is not None:
            raise self.health_error
        return [self.model]

    async def prewarm(self):
        return None

    async def analyze(self, system_prompt: str, prompt: str, images=None) -> dict:
        self.calls.append({"system": system_prompt, "prompt": prompt, "images": images or []})
        if self.on_analyze is not None:
            await self.on_analyze()
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return dict(DEFAULT_ANALYSIS)

    async def aclose(self):
        self.closed = True


async def open_repo(tmp_path: Path) -> tuple[aiosqlite.Connection, ReportRepository]:
    db = await aiosqlite.connect(str(tmp_path / "reports.db"))
    await initialize_db(db)
    return db, ReportRepository(db)


async def settle():
    """Let scheduled callbacks and recovery tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)
