"""Application configuration loaded from environment variables."""

import os
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from .constants import VIEWPORTS
from .errors import ConfigError

load_dotenv()

# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent / "data"))
DB_PATH = DATA_DIR / "reports.db"
SCREENSHOT_DIR = DATA_DIR / "screenshots"

# Session manager
SESSION_MANAGER_HOST = os.getenv("SESSION_MANAGER_HOST", "127.0.0.1")
SESSION_MANAGER_PORT = int(os.getenv("SESSION_MANAGER_PORT", "3000"))
SESSION_MANAGER_URL = f"http://{SESSION_MANAGER_HOST}:{SESSION_MANAGER_PORT}"

# Browser
BROWSER_ENGINE = os.getenv("BROWSER_ENGINE", "camoufox").lower()  # "camoufox" or "chromium"
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "true").lower() == "true"
NAVIGATION_TIMEOUT = int(os.getenv("NAVIGATION_TIMEOUT", "30000"))
ACTION_TIMEOUT = int(os.getenv("ACTION_TIMEOUT", "5000"))
SETTLE_DELAY_MS = 500
IGNORE_HTTPS_ERRORS = os.getenv("IGNORE_HTTPS_ERRORS", "false").lower() == "true"

# Analysis service (Ollama)
OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen3-vl:8b")
ANALYSIS_TIMEOUT = int(os.getenv("ANALYSIS_TIMEOUT", "600000"))
NUM_PREDICT = 32768
NUM_CTX = 32768
CF_ACCESS_CLIENT_ID = os.getenv("CF_ACCESS_CLIENT_ID", "")
CF_ACCESS_CLIENT_SECRET = os.getenv("CF_ACCESS_CLIENT_SECRET", "")

# Polling
MIN_POLL_INTERVAL_SECONDS = int(os.getenv("MIN_POLL_INTERVAL_SECONDS", "60"))
DIFF_THRESHOLD = float(os.getenv("DIFF_THRESHOLD", "0.005"))

# Discovery
CRAWL_DELAY_MS = 200
CRAWL_CONCURRENCY = 3
DEFAULT_MAX_PAGES = 50


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    SCREENSHOT_DIR.mkdir(parents=True, exist_ok=True)


def resolve_viewports(names: list[str]) -> list:
    """Turn viewport names into ViewportSpec objects, rejecting unknown ones."""
    from .models.page import ViewportSpec

    resolved = []
    for name in names:
        dims = VIEWPORTS.get(name)
        if dims is None:
            raise ConfigError(f"Unknown viewport: {name}. Known: {', '.join(VIEWPORTS)}")
        resolved.append(ViewportSpec(name=name, width=dims[0], height=dims[1]))
    if not resolved:
        raise ConfigError("At least one viewport is required.")
    return resolved


def validate_settings():
    """Sanity-check the analysis settings before the service starts."""
    parsed = urlparse(OLLAMA_URL)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"Invalid OLLAMA_URL: {OLLAMA_URL}")
    if not 1000 <= ANALYSIS_TIMEOUT <= 600_000:
        raise ConfigError(
            f"Timeout must be between 1000ms and 600000ms, got: {ANALYSIS_TIMEOUT}"
        )
    if BROWSER_ENGINE not in ("camoufox", "chromium"):
        raise ConfigError(f"Unknown BROWSER_ENGINE: {BROWSER_ENGINE}")
