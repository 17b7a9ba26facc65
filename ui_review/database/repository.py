"""Async repository for review reports stored in SQLite."""

from __future__ import annotations

import logging
import sys
from typing import Optional

import aiosqlite

from ..models.report import Report, ReportSummary

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class ReportRepository:
    """Async repository for report documents in SQLite.

    Every save writes the whole document; there are no partial updates, so
    the last writer for a report wins.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def save_report(self, report: Report):
        """Insert or fully overwrite a report."""
        await self._db.execute(
            """
            INSERT INTO reports (id, base_url, status, created_at, updated_at, document)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                base_url = excluded.base_url,
                status = excluded.status,
                updated_at = excluded.updated_at,
                document = excluded.document
            """,
            (
                report.id, report.base_url, report.status,
                report.created_at, report.updated_at, report.model_dump_json(),
            ),
        )
        await self._db.commit()

    async def get_report(self, report_id: str) -> Optional[Report]:
        """Get a single report by ID."""
        async with self._db.execute(
            "SELECT document FROM reports WHERE id = ?", (report_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return Report.model_validate_json(row[0])
        return None

    async def list_reports(self, limit: int = 100) -> list[ReportSummary]:
        """List reports, newest first. Unreadable documents are skipped."""
        summaries = []
        async with self._db.execute(
            "SELECT id, document FROM reports ORDER BY created_at DESC LIMIT ?", (limit,)
        ) as cursor:
            async for row in cursor:
                try:
                    summaries.append(ReportSummary.from_report(Report.model_validate_json(row[1])))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable report {row[0]}: {e}")
        return summaries

    async def get_report_count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM reports") as cursor:
            return (await cursor.fetchone())[0]
