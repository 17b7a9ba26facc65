"""Site discovery: sitemap first, breadth-first browser crawl as a fallback."""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from typing import Optional
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from ..config import CRAWL_CONCURRENCY, CRAWL_DELAY_MS, DEFAULT_MAX_PAGES, NAVIGATION_TIMEOUT
from ..constants import CRAWLER_USER_AGENT, LINK_ATTRIBUTES, MENU_TRIGGER_SELECTOR, SITEMAP_PATH, SKIP_EXTENSIONS
from ..errors import ConfigError
from ..models.session import DiscoveredPage, DiscoveryResult
from ..session_manager.browser import BrowserLauncher
from ..session_manager.urls import check_ssrf, validate_url
from .pipeline import Emit, notify

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

LOC_PATTERN = re.compile(r"<loc>\s*(.*?)\s*</loc>", re.IGNORECASE)
QUOTED_FILE_PATTERN = re.compile(r"['\"](/?[a-zA-Z0-9_/.:-]+\.(?:html|php|htm|asp|aspx|jsp))['\"]")
LOCATION_PATTERN = re.compile(r"(?:window\.)?location(?:\.href)?\s*=\s*['\"]([^'\"]+)['\"]")
MARKUP_FILE_PATTERN = re.compile(r"['\"`](/?[a-zA-Z0-9_/-]+\.(?:html|php|htm|asp|aspx|jsp))['\"`\s?#)]")
META_REFRESH_PATTERN = re.compile(r"url=(.+)", re.IGNORECASE)

MAX_SITEMAP_REDIRECTS = 3


# ── URL helpers ──────────────────────────────────────────────────────────────


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def normalize_path(url: str, base_origin: str) -> Optional[str]:
    """Reduce a same-origin page URL to "path?query" for deduplication.

    Returns None for other origins, non-http schemes and asset files.
    """
    try:
        parsed = urlparse(urljoin(base_origin + "/", url.strip()))
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https"):
        return None
    if f"{parsed.scheme}://{parsed.netloc}" != base_origin:
        return None

    path = parsed.path.rstrip("/") or "/"
    ext = re.search(r"\.[a-zA-Z0-9]+$", path)
    if ext and ext.group(0).lower() in SKIP_EXTENSIONS:
        return None

    return path + (f"?{parsed.query}" if parsed.query else "")


def page_name_from_path(path: str) -> str:
    """Human-readable page name: "/blog/my-post.html" -> "Blog > my post"."""
    name = re.sub(r"^/", "", path)
    name = re.sub(r"\.\w+$", "", name)
    name = re.sub(r"[_-]", " ", name).replace("/", " > ") or "Home"
    return name[0].upper() + name[1:]


def extract_links(html: str, page_url: str) -> list[str]:
    """Find same-origin URLs in rendered markup.

    Looks at anchors, any element with href, onclick/data-* navigation
    attributes, quoted page-file references anywhere in the markup, and meta
    refresh redirects.
    """
    soup = BeautifulSoup(html, "html.parser")
    origin = _origin(page_url)
    found: list[str] = []
    seen: set[str] = set()

    def add(raw: Optional[str]):
        if not raw or not isinstance(raw, str):
            return
        raw = raw.strip()
        if not raw or raw == "#" or raw.startswith(("javascript:", "data:", "mailto:", "tel:")):
            return
        try:
            absolute = urljoin(page_url, raw)
        except ValueError:
            return
        parsed = urlparse(absolute)
        if parsed.scheme in ("http", "https") and _origin(absolute) == origin and absolute not in seen:
            seen.add(absolute)
            found.append(absolute)

    for element in soup.select("a[href]"):
        add(element.get("href"))
    for element in soup.select("[href]"):
        add(element.get("href"))

    for element in soup.select(",".join(f"[{attr}]" for attr in LINK_ATTRIBUTES)):
        for attr in LINK_ATTRIBUTES:
            value = element.get(attr)
            if not value:
                continue
            for match in QUOTED_FILE_PATTERN.findall(value):
                add(match)
            location = LOCATION_PATTERN.search(value)
            if location:
                add(location.group(1))
            elif attr != "onclick":
                add(value)

    for match in MARKUP_FILE_PATTERN.findall(html):
        if ".min." in match or match.startswith("//"):
            continue
        add(match)

    for meta in soup.find_all("meta", attrs={"http-equiv": re.compile("^refresh$", re.IGNORECASE)}):
        redirect = META_REFRESH_PATTERN.search(meta.get("content") or "")
        if redirect:
            add(redirect.group(1).strip())

    return found


# ── Crawler ──────────────────────────────────────────────────────────────────


class DiscoveryCrawler:
    """Finds reviewable pages on a site."""

    def __init__(
        self,
        launcher: BrowserLauncher,
        http_client: Optional[httpx.AsyncClient] = None,
        concurrency: int = CRAWL_CONCURRENCY,
        delay_ms: int = CRAWL_DELAY_MS,
    ):
        self._launcher = launcher
        self._client = http_client
        self._concurrency = max(1, concurrency)
        self._delay = delay_ms / 1000

    async def discover(
        self,
        base_url: str,
        max_pages: int = DEFAULT_MAX_PAGES,
        auth_state: Optional[dict] = None,
        abort: Optional[asyncio.Event] = None,
        emit: Optional[Emit] = None,
        allow_private: bool = False,
    ) -> DiscoveryResult:
        """Discover pages via sitemap.xml, falling back to a link crawl.

        Args:
            base_url: Site root URL.
            max_pages: Maximum number of pages to return.
            auth_state: Browser storage state for crawling behind a login.
            abort: Stops the crawl before the next batch when set.
            emit: Receives "progress" and "page" events.
            allow_private: Skip the private-address check.

        Raises:
            ConfigError: invalid URL or a private address without allow_private.
            CaptureError: the crawl browser could not be launched.
        """
        origin = validate_url(base_url)
        await check_ssrf(base_url, allow_private=allow_private)
        max_pages = max(1, max_pages)

        paths = await self._try_sitemap(origin, emit, allow_private)
        if paths:
            pages = []
            for path in paths[:max_pages]:
                info = DiscoveredPage(name=page_name_from_path(path), path=path)
                pages.append(info)
                await notify(emit, "page", **info.model_dump())
            logger.info(f"[DISCOVER] {origin}: {len(paths)} sitemap URLs, returning {len(pages)}")
            return DiscoveryResult(
                pages=pages,
                source="sitemap",
                total_links_found=len(paths),
                pages_skipped=max(0, len(paths) - max_pages),
            )

        await notify(emit, "progress", message="No sitemap found, crawling links...")
        result = await self._crawl(base_url, origin, max_pages, auth_state, abort, emit)
        logger.info(
            f"[DISCOVER] {origin}: crawled {len(result.pages)} pages, "
            f"{result.total_links_found} links, {result.pages_skipped} left in queue"
        )
        return result

    async def _try_sitemap(self, origin: str, emit: Optional[Emit], allow_private: bool = False) -> list[str]:
        sitemap_url = origin + SITEMAP_PATH
        await notify(emit, "progress", message=f"Trying {sitemap_url}...")

        try:
            if self._client is not None:
                response = await self._fetch_sitemap(self._client, sitemap_url, allow_private)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await self._fetch_sitemap(client, sitemap_url, allow_private)
        except httpx.HTTPError as e:
            logger.info(f"[DISCOVER] No sitemap at {sitemap_url}: {type(e).__name__}")
            return []
        except ConfigError as e:
            logger.warning(f"[DISCOVER] Ignoring sitemap redirect: {e}")
            return []

        if response is None or not response.is_success:
            return []
        text = response.text
        if "<loc>" not in text and "<urlset" not in text:
            return []

        paths: list[str] = []
        for loc in LOC_PATTERN.findall(text):
            path = normalize_path(loc, origin)
            if path and path not in paths:
                paths.append(path)

        if paths:
            await notify(emit, "progress", message=f"Sitemap found with {len(paths)} URLs")
        return paths

    async def _fetch_sitemap(
        self, client: httpx.AsyncClient, url: str, allow_private: bool
    ) -> Optional[httpx.Response]:
        """GET the sitemap, following redirects only to hosts that pass the SSRF check."""
        for _ in range(MAX_SITEMAP_REDIRECTS + 1):
            response = await client.get(
                url, headers={"User-Agent": CRAWLER_USER_AGENT}, follow_redirects=False
            )
            if not response.has_redirect_location:
                return response
            url = urljoin(str(response.url), response.headers["location"])
            await check_ssrf(url, allow_private=allow_private)
        logger.info(f"[DISCOVER] Too many sitemap redirects, last at {url}")
        return None

    async def _crawl(
        self,
        base_url: str,
        origin: str,
        max_pages: int,
        auth_state: Optional[dict],
        abort: Optional[asyncio.Event],
        emit: Optional[Emit],
    ) -> DiscoveryResult:
        visited: set[str] = set()
        queue: list[tuple[str, int]] = [(normalize_path(base_url, origin) or "/", 0)]
        pages: list[DiscoveredPage] = []
        total_links = 0

        handle = await self._launcher.launch()
        try:
            while queue and len(pages) < max_pages:
                if abort is not None and abort.is_set():
                    break

                batch: list[tuple[str, int]] = []
                while queue and len(batch) < min(self._concurrency, max_pages - len(pages)):
                    path, depth = queue.pop(0)
                    if path in visited:
                        continue
                    visited.add(path)
                    batch.append((path, depth))
                if not batch:
                    continue

                await notify(
                    emit, "progress",
                    message=f"Crawling {', '.join(p for p, _ in batch)} ({len(pages)}/{max_pages} found)...",
                )
                visits = await asyncio.gather(
                    *(self._visit(handle, origin, path, depth, auth_state) for path, depth in batch)
                )

                for info, new_paths in visits:
                    fresh = [p for p in dict.fromkeys(new_paths) if p not in visited]
                    total_links += len(fresh)
                    info.links = len(fresh)
                    queued = {p for p, _ in queue}
                    queue.extend((p, info.depth + 1) for p in fresh if p not in queued)
                    pages.append(info)
                    await notify(emit, "page", **info.model_dump())

                if self._delay:
                    await asyncio.sleep(self._delay)
        finally:
            try:
                await handle.close()
            except Exception as e:
                logger.warning(f"Error closing crawl browser: {e}")

        return DiscoveryResult(
            pages=pages[:max_pages],
            source="crawl",
            total_links_found=total_links,
            pages_skipped=len(queue),
        )

    async def _visit(
        self, handle, origin: str, path: str, depth: int, auth_state: Optional[dict]
    ) -> tuple[DiscoveredPage, list[str]]:
        """Load one page and collect its links. Load failures are returned, not raised."""
        name = page_name_from_path(path)
        try:
            page = await handle.new_page(auth_state=auth_state)
            try:
                response = await page.goto(origin + path, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT)
                status = response.status if response is not None else 0
                await self._expand_menus(page)
                html = await page.content()
                links = extract_links(html, page.url or origin + path)
            finally:
                await handle.close_page(page)
        except Exception as e:
            logger.info(f"[DISCOVER] Failed to load {path}: {e}")
            return DiscoveredPage(name=name, path=path, depth=depth, status=0, error=str(e)), []

        new_paths = [p for p in (normalize_path(link, origin) for link in links) if p]
        return DiscoveredPage(name=name, path=path, depth=depth, status=status), new_paths

    async def _expand_menus(self, page):
        """Click up to three menu toggles so collapsed navigation renders its links."""
        try:
            triggers = await page.query_selector_all(MENU_TRIGGER_SELECTOR)
        except Exception:
            return
        for trigger in triggers[:3]:
            try:
                await trigger.click(timeout=2000)
                await page.wait_for_timeout(300)
            except Exception:
                continue
