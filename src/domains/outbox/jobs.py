"""
Handler registry for the general-purpose outbox worker.
"""

from typing import Dict, Optional, cast

from prisma import Prisma
from src.core.settings import settings
from src.domains.drawings.service import DrawingJobsService
from src.domains.notifications.service import NotificationDeliveryService

from .models import (
    GENERAL_JOB_TYPES,
    DeliverNotificationPayload,
    GenerateDrawingTilesPayload,
    JobPayload,
    JobType,
    OutboxJob,
    WorkerRunResult,
)
from .worker import JobHandler, OutboxWorker


def build_general_handlers(db: Prisma) -> Dict[str, JobHandler]:
    notifications = NotificationDeliveryService(db)
    drawings = DrawingJobsService(db)

    async def deliver_notification(job: OutboxJob, payload: JobPayload) -> Optional[str]:
        return await notifications.deliver(
            cast(DeliverNotificationPayload, payload).notification_id
        )

    async def refresh_drawing_sheets_list(
        job: OutboxJob, payload: JobPayload
    ) -> Optional[str]:
        return await drawings.refresh_sheets_list()

    async def generate_drawing_tiles(job: OutboxJob, payload: JobPayload) -> Optional[str]:
        tiles = cast(GenerateDrawingTilesPayload, payload)
        return await drawings.generate_tiles(tiles.sheet_version_id, job.org_id, job.id)

    return {
        JobType.DELIVER_NOTIFICATION.value: deliver_notification,
        JobType.REFRESH_DRAWING_SHEETS_LIST.value: refresh_drawing_sheets_list,
        JobType.GENERATE_DRAWING_TILES.value: generate_drawing_tiles,
    }


async def run_general_outbox(db: Prisma) -> WorkerRunResult:
    """Process one batch of notification and drawing jobs."""
    worker = OutboxWorker(
        db,
        handlers=build_general_handlers(db),
        job_types=GENERAL_JOB_TYPES,
        batch_size=settings.OUTBOX_BATCH_SIZE,
        include_failures=not settings.is_production,
    )
    return await worker.process_batch()
