# src/domains/outbox/routes.py
from fastapi import APIRouter, Depends, status

from prisma import Prisma
from src.core.database import get_db
from src.shared.cron import require_cron_secret, require_internal_secret

from .jobs import run_general_outbox
from .models import EnqueueRequest, OutboxJob, WorkerRunResult
from .service import OutboxService

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.post(
    "/process-outbox",
    dependencies=[Depends(require_cron_secret)],
    response_model=WorkerRunResult,
    response_model_exclude_none=True,
    operation_id="processOutbox",
)
async def process_outbox(db: Prisma = Depends(get_db)) -> WorkerRunResult:
    """
    Process one batch of notification and drawing jobs.

    Failure details are only included outside production.
    """
    return await run_general_outbox(db)


@router.post(
    "/enqueue",
    response_model=OutboxJob,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_secret)],
    operation_id="enqueueOutboxJob",
)
async def enqueue_job(
    request: EnqueueRequest, db: Prisma = Depends(get_db)
) -> OutboxJob:
    """Queue a background job on behalf of the app server."""
    return await OutboxService(db).enqueue(
        request.job_type.value,
        request.payload,
        org_id=request.org_id,
        dedupe_keys=request.dedupe_keys,
        run_at=request.run_at,
    )
