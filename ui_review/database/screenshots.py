"""On-disk screenshot storage. The stored PNG doubles as the poll-diff baseline."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from ..constants import MAX_FILENAME_PART


def safe_name(name: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to '_', truncate."""
    return re.sub(r"[^a-z0-9]+", "_", name.lower())[:MAX_FILENAME_PART]


class ScreenshotStore:
    """Screenshots keyed by report id + sanitized page and viewport names."""

    def __init__(self, root: Path):
        self._root = Path(root)

    def path_for(self, report_id: str, page_name: str, viewport_name: str) -> Path:
        return self._root / safe_name(report_id) / f"{safe_name(page_name)}_{safe_name(viewport_name)}.png"

    def save(self, report_id: str, page_name: str, viewport_name: str, data: bytes) -> Path:
        path = self.path_for(report_id, page_name, viewport_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def load(self, report_id: str, page_name: str, viewport_name: str) -> Optional[bytes]:
        path = self.path_for(report_id, page_name, viewport_name)
        if not path.exists():
            return None
        return path.read_bytes()
