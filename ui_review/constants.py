"""Viewports, finding vocabularies, crawl filters and browser crash markers."""

# ── Viewports ────────────────────────────────────────────────────────────────

VIEWPORTS = {
    "desktop": (1920, 1080),
    "laptop": (1366, 768),
    "tablet": (768, 1024),
    "mobile": (375, 812),
}

# ── Findings ─────────────────────────────────────────────────────────────────

SEVERITY_ORDER = {
    "critical": 0,
    "warning": 1,
    "suggestion": 2,
}

SEVERITY_BADGES = {
    "critical": "CRITICAL",
    "warning": "WARNING",
    "suggestion": "suggestion",
}

CATEGORIES = {
    "layout",
    "typography",
    "components",
    "spacing",
    "visual-hierarchy",
    "accessibility",
    "responsive-fit",
}

MAX_FINDINGS = 10

# ── Report keys and files ────────────────────────────────────────────────────

RESULT_KEY_SEPARATOR = "::"
MAX_FILENAME_PART = 60

# ── Discovery ────────────────────────────────────────────────────────────────

# Non-document resources never treated as pages
SKIP_EXTENSIONS = {
    ".svg", ".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico", ".bmp", ".avif",
    ".css", ".js", ".mjs", ".map", ".woff", ".woff2", ".ttf", ".eot", ".otf",
    ".pdf", ".zip", ".gz", ".tar", ".mp4", ".mp3", ".webm", ".ogg", ".wav",
    ".json", ".xml", ".txt", ".csv", ".md", ".yml", ".yaml", ".toml",
}

# Buttons that usually reveal collapsed navigation
MENU_TRIGGER_SELECTOR = (
    'button[class*="menu"], button[class*="hamburger"], button[class*="nav"], '
    '[class*="menu-toggle"], [class*="nav-toggle"], '
    'button[aria-label*="menu" i], button[aria-expanded="false"]'
)

LINK_ATTRIBUTES = ("onclick", "data-href", "data-url", "data-link")

SITEMAP_PATH = "/sitemap.xml"
CRAWLER_USER_AGENT = "ui-review/1.0"

# ── Browser ──────────────────────────────────────────────────────────────────

# Fragments of Playwright error messages raised once the browser process is gone
CRASH_INDICATORS = [
    "Target page, context or browser has been closed",
    "Target closed",
    "Browser has been closed",
    "browser has been closed",
    "has been closed",
    "Connection closed",
    "Browser closed",
]
