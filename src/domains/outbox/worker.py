# src/domains/outbox/worker.py
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Sequence

from prisma import Prisma
from src.core.settings import settings
from src.shared.exceptions import ConfigurationError

from .exceptions import JobTimeoutError
from .models import (
    JobFailure,
    JobPayload,
    OutboxJob,
    OutboxStatus,
    WorkerRunResult,
    parse_payload,
)
from .service import OutboxService, error_text

logger = logging.getLogger(__name__)

UNKNOWN_JOB_TYPE_MESSAGE = "Unknown job type"

# A handler returns an optional note stored on the completed row
JobHandler = Callable[[OutboxJob, JobPayload], Awaitable[Optional[str]]]


class OutboxWorker:
    """Claims a batch of jobs and runs each through its registered handler."""

    def __init__(
        self,
        db: Prisma,
        handlers: Dict[str, JobHandler],
        job_types: Sequence[str],
        batch_size: int,
        service: Optional[OutboxService] = None,
        timeout_seconds: Optional[float] = None,
        include_failures: bool = False,
    ):
        self.handlers = handlers
        self.job_types = list(job_types)
        self.batch_size = batch_size
        self.service = service or OutboxService(db)
        self.timeout_seconds = timeout_seconds or settings.OUTBOX_JOB_TIMEOUT_SECONDS
        self.include_failures = include_failures

    async def process_batch(self, now: Optional[datetime] = None) -> WorkerRunResult:
        """
        Claim and process one batch sequentially.

        Raises:
            ConfigurationError: If a handler hits missing configuration; the
                job and the rest of the batch are released back to pending
        """
        jobs = await self.service.claim_batch(self.job_types, self.batch_size, now)
        result = WorkerRunResult(failures=[] if self.include_failures else None)

        for index, job in enumerate(jobs):
            try:
                await self._run_job(job, result)
            except ConfigurationError:
                await self.service.release(jobs[index:])
                raise

        return result

    async def _run_job(self, job: OutboxJob, result: WorkerRunResult) -> None:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            await self.service.mark_failed(job, UNKNOWN_JOB_TYPE_MESSAGE)
            self._record_failure(result, job, UNKNOWN_JOB_TYPE_MESSAGE)
            return

        try:
            payload = parse_payload(job.job_type, job.payload)
            note = await asyncio.wait_for(
                handler(job, payload), timeout=self.timeout_seconds
            )
        except ConfigurationError:
            logger.error(
                f"Outbox job {job.id} ({job.job_type}) hit missing configuration",
                exc_info=True,
            )
            raise
        except asyncio.TimeoutError:
            error = JobTimeoutError(
                f"Job timed out after {self.timeout_seconds} seconds"
            )
            await self._fail(job, error, result)
        except Exception as e:
            await self._fail(job, e, result)
        else:
            await self.service.mark_completed(job, note=note)
            if note and note.startswith("skipped"):
                result.skipped += 1
            else:
                result.processed += 1

    async def _fail(
        self, job: OutboxJob, error: BaseException, result: WorkerRunResult
    ) -> None:
        status = await self.service.handle_failure(job, error)
        if status == OutboxStatus.COMPLETED:
            result.skipped += 1
            return
        self._record_failure(result, job, error_text(error))

    def _record_failure(self, result: WorkerRunResult, job: OutboxJob, text: str) -> None:
        result.failed += 1
        if result.failures is not None:
            result.failures.append(JobFailure(id=job.id, job_type=job.job_type, error=text))
