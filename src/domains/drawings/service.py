# src/domains/drawings/service.py
import logging
from typing import Optional

import httpx

from prisma import Prisma
from src.core.settings import settings
from src.domains.outbox.exceptions import (
    PermanentJobError,
    StaleReferenceError,
    TransientJobError,
)

logger = logging.getLogger(__name__)

SHEETS_LIST_VIEW = "drawing_sheets_list"
DELEGATED_NOTE = "Delegated to tile worker"


class SheetVersionNotFoundError(StaleReferenceError):
    code = "SHEET_VERSION_NOT_FOUND"


class DrawingJobsService:
    """Background work for drawing sets; tile rendering itself is external."""

    def __init__(self, db: Prisma):
        self.db = db

    async def refresh_sheets_list(self) -> Optional[str]:
        if not settings.is_production:
            return "skipped: materialized view refresh disabled outside production"
        await self.db.execute_raw(f"REFRESH MATERIALIZED VIEW {SHEETS_LIST_VIEW}")
        return None

    async def generate_tiles(
        self, sheet_version_id: str, org_id: Optional[str], job_id: str
    ) -> str:
        """
        Hand a sheet version to the tile worker.

        Raises:
            SheetVersionNotFoundError: If the sheet version was deleted
            TransientJobError: If the worker is unreachable or returns 5xx
            PermanentJobError: If no worker is configured or it rejects the request
        """
        version = await self.db.drawingsheetversion.find_unique(
            where={"id": sheet_version_id}
        )
        if not version:
            raise SheetVersionNotFoundError(
                f"Sheet version not found: {sheet_version_id}"
            )

        if not settings.DRAWINGS_TILE_WORKER_URL:
            raise PermanentJobError("Tile worker is not configured")

        headers = {}
        if settings.DRAWINGS_TILE_WORKER_SECRET:
            headers["Authorization"] = f"Bearer {settings.DRAWINGS_TILE_WORKER_SECRET}"

        async with httpx.AsyncClient(timeout=30) as client:
            try:
                response = await client.post(
                    settings.DRAWINGS_TILE_WORKER_URL,
                    json={
                        "sheetVersionId": sheet_version_id,
                        "orgId": org_id or version.orgId,
                        "jobId": job_id,
                    },
                    headers=headers,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                message = f"Tile worker returned {e.response.status_code}: {e.response.text}"
                if e.response.status_code >= 500 or e.response.status_code == 429:
                    raise TransientJobError(message) from e
                raise PermanentJobError(message) from e
            except httpx.RequestError as e:
                raise TransientJobError(f"Tile worker request failed: {e}") from e

        logger.info(f"Delegated tile generation for sheet version {sheet_version_id}")
        return DELEGATED_NOTE
