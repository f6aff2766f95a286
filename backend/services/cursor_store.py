"""Durable scan cursor, one integer per application name."""

from __future__ import annotations

from sqlalchemy import select

from models.database import AsyncSessionLocal, ScanCursorRow
from utils.utcnow import utcnow
from utils.logger import get_logger

logger = get_logger("cursor_store")

DEFAULT_SCAN_HEIGHT = 1


class ScanCursorStore:
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    async def get(self, app_name: str) -> int:
        """Return the next unscanned height, creating the row at 1 on first read."""
        async with self._session_factory() as session:
            row = await session.get(ScanCursorRow, app_name)
            if row is None:
                row = ScanCursorRow(app_name=app_name, height=DEFAULT_SCAN_HEIGHT, updated_at=utcnow())
                session.add(row)
                await session.commit()
                logger.info("Created scan cursor", app_name=app_name, height=DEFAULT_SCAN_HEIGHT)
            return int(row.height or DEFAULT_SCAN_HEIGHT)

    async def put(self, app_name: str, height: int) -> int:
        """Persist ``height``; the stored value never decreases. Returns the stored value."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ScanCursorRow).where(ScanCursorRow.app_name == app_name)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = ScanCursorRow(app_name=app_name, height=max(int(height), DEFAULT_SCAN_HEIGHT))
                session.add(row)
            elif int(height) > int(row.height):
                row.height = int(height)
            else:
                logger.warning(
                    "Ignored non-advancing cursor write",
                    app_name=app_name,
                    stored=row.height,
                    requested=height,
                )
            row.updated_at = utcnow()
            await session.commit()
            return int(row.height)
