"""Tests for site discovery."""

import asyncio

import httpx
import pytest

from tests.conftest import FakeLauncher
from ui_review.errors import ConfigError
from ui_review.review.discover import DiscoveryCrawler, extract_links, normalize_path, page_name_from_path

ORIGIN = "https://example.test"

SITEMAP = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.test/</loc></url>
  <url><loc>https://example.test/about/</loc></url>
  <url><loc> https://example.test/pricing </loc></url>
  <url><loc>https://example.test/blog#top</loc></url>
  <url><loc>https://example.test/contact</loc></url>
  <url><loc>https://example.test/about</loc></url>
  <url><loc>https://other.test/elsewhere</loc></url>
  <url><loc>https://example.test/logo.png</loc></url>
</urlset>
"""


def _sitemap_client(status: int = 200, body: str = SITEMAP) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/sitemap.xml"
        return httpx.Response(status, text=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_normalize_path() -> None:
    assert normalize_path("https://example.test/about/#team", ORIGIN) == "/about"
    assert normalize_path("/", ORIGIN) == "/"
    assert normalize_path("/search?q=x", ORIGIN) == "/search?q=x"
    assert normalize_path("https://other.test/", ORIGIN) is None
    assert normalize_path("/styles/site.css", ORIGIN) is None
    assert normalize_path("mailto:me@example.test", ORIGIN) is None


def test_page_name_from_path() -> None:
    assert page_name_from_path("/") == "Home"
    assert page_name_from_path("/about-us") == "About us"
    assert page_name_from_path("/blog/my_post.html") == "Blog > my post"


def test_extract_links_finds_every_kind() -> None:
    html = """
    <html><head>
      <meta http-equiv="refresh" content="5; url=/moved">
      <link rel="canonical" href="/canonical">
    </head><body>
      <a href="/about">About</a>
      <a href="https://other.test/x">External</a>
      <a href="javascript:void(0)">Nothing</a>
      <a href="#">Top</a>
      <div onclick="window.location.href='/dashboard'">Go</div>
      <span data-href="/pricing">Pricing</span>
      <button onclick="open('/legacy/terms.html')">Terms</button>
      <script>const route = "/reports/summary.php";</script>
    </body></html>
    """

    links = extract_links(html, "https://example.test/start")

    for path in ("/about", "/canonical", "/moved", "/dashboard", "/pricing",
                 "/legacy/terms.html", "/reports/summary.php"):
        assert f"https://example.test{path}" in links
    assert not any("other.test" in link for link in links)
    assert len(links) == len(set(links))


def test_sitemap_is_truncated_to_max_pages() -> None:
    sitemap = "<urlset>" + "".join(
        f"<url><loc>https://example.test/page-{i}</loc></url>" for i in range(5)
    ) + "</urlset>"
    crawler = DiscoveryCrawler(FakeLauncher(), http_client=_sitemap_client(body=sitemap))

    result = asyncio.run(crawler.discover(ORIGIN, max_pages=3, allow_private=True))

    assert result.source == "sitemap"
    assert [p.path for p in result.pages] == ["/page-0", "/page-1", "/page-2"]
    assert result.total_links_found == 5
    assert result.pages_skipped == 2


def test_sitemap_paths_are_normalized_and_deduplicated() -> None:
    launcher = FakeLauncher()
    crawler = DiscoveryCrawler(launcher, http_client=_sitemap_client())

    result = asyncio.run(crawler.discover(ORIGIN, max_pages=50, allow_private=True))

    assert [p.path for p in result.pages] == ["/", "/about", "/pricing", "/blog", "/contact"]
    assert result.pages_skipped == 0
    assert launcher.handles == []


def test_crawl_fallback_walks_links_breadth_first() -> None:
    site = {
        "/": '<a href="/a">A</a><a href="/b">B</a><a href="/missing">M</a>',
        "/a": '<a href="/c">C</a><a href="/">Home</a>',
        "/b": "<p>leaf</p>",
        "/c": "<p>leaf</p>",
    }
    launcher = FakeLauncher(site=site)
    crawler = DiscoveryCrawler(launcher, http_client=_sitemap_client(status=404), delay_ms=0)
    events = []

    async def emit(event, **data):
        events.append((event, data))

    result = asyncio.run(crawler.discover(ORIGIN, max_pages=10, emit=emit, allow_private=True))

    assert result.source == "crawl"
    paths = [p.path for p in result.pages]
    assert paths[:4] == ["/", "/a", "/b", "/missing"]
    assert "/c" in paths
    missing = next(p for p in result.pages if p.path == "/missing")
    assert missing.status == 0
    assert missing.error
    assert result.pages[0].depth == 0
    assert next(p for p in result.pages if p.path == "/c").depth == 2
    assert launcher.handles[0].closed
    assert sum(1 for e, _ in events if e == "page") == len(result.pages)


def test_crawl_reports_queue_left_when_limit_reached() -> None:
    site = {"/": "".join(f'<a href="/p{i}">{i}</a>' for i in range(6))}
    site.update({f"/p{i}": "<p>leaf</p>" for i in range(6)})
    crawler = DiscoveryCrawler(FakeLauncher(site=site), http_client=_sitemap_client(status=404), delay_ms=0)

    result = asyncio.run(crawler.discover(ORIGIN, max_pages=3, allow_private=True))

    assert len(result.pages) == 3
    assert result.pages_skipped == 4


def test_abort_stops_crawl_before_next_batch() -> None:
    site = {"/": '<a href="/a">A</a>', "/a": "<p>leaf</p>"}
    crawler = DiscoveryCrawler(FakeLauncher(site=site), http_client=_sitemap_client(status=404), delay_ms=0)

    async def scenario():
        abort = asyncio.Event()

        async def emit(event, **data):
            if event == "page":
                abort.set()

        return await crawler.discover(ORIGIN, abort=abort, emit=emit, allow_private=True)

    result = asyncio.run(scenario())

    assert [p.path for p in result.pages] == ["/"]
    assert result.pages_skipped == 1


def test_invalid_scheme_is_rejected() -> None:
    crawler = DiscoveryCrawler(FakeLauncher(), http_client=_sitemap_client())

    with pytest.raises(ConfigError, match="Unsupported protocol"):
        asyncio.run(crawler.discover("ftp://example.test"))


def test_private_address_is_rejected() -> None:
    crawler = DiscoveryCrawler(FakeLauncher(), http_client=_sitemap_client())

    with pytest.raises(ConfigError, match="private"):
        asyncio.run(crawler.discover("http://127.0.0.1:8080"))


def test_sitemap_redirect_to_private_host_is_not_followed(monkeypatch) -> None:
    requested = []
    checked = []

    async def check_ssrf(url, allow_private=False):
        checked.append(url)
        if "127.0.0.1" in url:
            raise ConfigError(f"URL resolves to private/internal IP (127.0.0.1): {url}")

    monkeypatch.setattr("ui_review.review.discover.check_ssrf", check_ssrf)

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.host == "example.test":
            return httpx.Response(302, headers={"Location": "http://127.0.0.1/sitemap.xml"})
        return httpx.Response(200, text=SITEMAP)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    launcher = FakeLauncher(site={"/": "<p>home</p>"})
    crawler = DiscoveryCrawler(launcher, http_client=client, delay_ms=0)

    result = asyncio.run(crawler.discover(ORIGIN, max_pages=5))

    assert requested == ["https://example.test/sitemap.xml"]
    assert checked == [ORIGIN, "http://127.0.0.1/sitemap.xml"]
    assert result.source == "crawl"
    assert [p.path for p in result.pages] == ["/"]


def test_sitemap_redirect_within_site_is_followed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/sitemap.xml":
            return httpx.Response(301, headers={"Location": "/sitemap_index.xml"})
        return httpx.Response(200, text=SITEMAP)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    crawler = DiscoveryCrawler(FakeLauncher(), http_client=client)

    result = asyncio.run(crawler.discover(ORIGIN, max_pages=50, allow_private=True))

    assert result.source == "sitemap"
    assert "/pricing" in [p.path for p in result.pages]
