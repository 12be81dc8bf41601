"""
QuickBooks outbox worker: keepalive, stale recovery and sync job handlers.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional, cast

from pydantic import Field

from prisma import Prisma
from src.core.settings import settings
from src.domains.outbox.exceptions import PermanentJobError
from src.domains.outbox.models import (
    QBO_JOB_TYPES,
    JobPayload,
    JobType,
    OutboxJob,
    QBOSyncInvoicePayload,
    QBOSyncPaymentPayload,
    WorkerRunResult,
)
from src.domains.outbox.service import OutboxService
from src.domains.outbox.worker import JobHandler, OutboxWorker

from .connection import QBOConnectionManager
from .exceptions import SyncFailedError
from .models import KeepaliveResult, SyncResult
from .sync import QBOSyncService

logger = logging.getLogger(__name__)


class QBOOutboxRunResult(WorkerRunResult):
    keepalive: KeepaliveResult = Field(default_factory=KeepaliveResult)
    recovered_stale: int = 0


def _job_note(result: SyncResult) -> Optional[str]:
    """Translate a sync result into the worker's completion contract."""
    if result.success:
        return None
    if result.skipped:
        return f"skipped: {result.error}"
    raise SyncFailedError(result.error or "QBO sync failed")


def _org_id(job: OutboxJob) -> str:
    if not job.org_id:
        raise PermanentJobError("QBO sync job has no organization")
    return job.org_id


def build_qbo_handlers(sync: QBOSyncService) -> Dict[str, JobHandler]:
    async def sync_invoice(job: OutboxJob, payload: JobPayload) -> Optional[str]:
        invoice_id = cast(QBOSyncInvoicePayload, payload).invoice_id
        return _job_note(await sync.sync_invoice(invoice_id, _org_id(job)))

    async def sync_payment(job: OutboxJob, payload: JobPayload) -> Optional[str]:
        payment_id = cast(QBOSyncPaymentPayload, payload).payment_id
        return _job_note(await sync.sync_payment(payment_id, _org_id(job)))

    return {
        JobType.QBO_SYNC_INVOICE.value: sync_invoice,
        JobType.QBO_SYNC_PAYMENT.value: sync_payment,
    }


async def run_keepalive(db: Prisma, limit: Optional[int] = None) -> KeepaliveResult:
    return await QBOConnectionManager(db).keepalive_sweep(limit)


async def run_qbo_outbox(db: Prisma) -> QBOOutboxRunResult:
    """
    One scheduled pass of the QBO worker.

    Connections close to losing their refresh token are kept alive first,
    then jobs abandoned in processing are recovered before a new batch is
    claimed.
    """
    connections = QBOConnectionManager(db)
    outbox = OutboxService(db)
    sync = QBOSyncService(db, connections=connections, outbox=outbox)

    keepalive = await connections.keepalive_sweep()
    recovered = await outbox.recover_stale(
        QBO_JOB_TYPES,
        older_than=timedelta(minutes=settings.OUTBOX_PROCESSING_TIMEOUT_MINUTES),
    )

    worker = OutboxWorker(
        db,
        handlers=build_qbo_handlers(sync),
        job_types=QBO_JOB_TYPES,
        batch_size=settings.QBO_OUTBOX_BATCH_SIZE,
        service=outbox,
        include_failures=not settings.is_production,
    )
    batch = await worker.process_batch()
    logger.info(
        f"QBO outbox run processed={batch.processed} failed={batch.failed} "
        f"skipped={batch.skipped} recovered_stale={recovered}"
    )

    return QBOOutboxRunResult(
        **batch.model_dump(), keepalive=keepalive, recovered_stale=recovered
    )
