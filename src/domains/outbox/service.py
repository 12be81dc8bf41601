# src/domains/outbox/service.py
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from prisma import Json, Prisma

from .models import OutboxJob, OutboxStatus
from .policy import ErrorClass, RetryPolicy, classify_error

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000
STALE_RECOVERY_MESSAGE = "Recovered stale processing job"

CLAIM_SQL = """
UPDATE outbox
SET status = 'processing', updated_at = now()
WHERE id IN (
    SELECT id FROM outbox
    WHERE status = 'pending'
      AND run_at <= $1::timestamptz
      AND job_type = ANY($2::text[])
    ORDER BY created_at ASC
    LIMIT $3
    FOR UPDATE SKIP LOCKED
)
RETURNING id, org_id, job_type, payload, status, retry_count, last_error, run_at, created_at
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate_error(text: str) -> str:
    return text[:MAX_ERROR_LENGTH]


def error_text(error: BaseException) -> str:
    message = str(error).strip()
    return truncate_error(message or type(error).__name__)


def build_dedupe_key(
    org_id: Optional[str], job_type: str, payload: Dict[str, Any], keys: Sequence[str]
) -> str:
    parts = [org_id or "", job_type] + [f"{k}={payload.get(k)}" for k in sorted(keys)]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


class OutboxService:
    """
    Durable job queue backed by the ``outbox`` table.

    The table is the only coordination point between workers: claiming is a
    single conditional statement, so concurrent invocations never receive the
    same row.
    """

    def __init__(self, db: Prisma, policy: Optional[RetryPolicy] = None):
        self.db = db
        self.policy = policy or RetryPolicy.from_settings()

    async def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        org_id: Optional[str] = None,
        dedupe_keys: Optional[Sequence[str]] = None,
        run_at: Optional[datetime] = None,
    ) -> OutboxJob:
        """
        Insert a pending job.

        Args:
            job_type: Handler key
            payload: JSON payload for the handler
            org_id: Owning organization
            dedupe_keys: Payload keys that identify an equivalent job; if a
                pending or processing job with the same values exists it is
                returned instead of inserting a duplicate
            run_at: Earliest execution time (defaults to now)
        """
        payload = payload or {}
        dedupe_key = None
        if dedupe_keys:
            dedupe_key = build_dedupe_key(org_id, job_type, payload, dedupe_keys)
            existing = await self.db.outboxjob.find_first(
                where={
                    "dedupeKey": dedupe_key,
                    "status": {"in": ["pending", "processing"]},
                }
            )
            if existing:
                logger.debug(f"Outbox job {existing.id} already queued for {job_type}")
                return OutboxJob.from_prisma(existing)

        row = await self.db.outboxjob.create(
            data={
                "orgId": org_id,
                "jobType": job_type,
                "payload": Json(payload),
                "status": "pending",
                "retryCount": 0,
                "dedupeKey": dedupe_key,
                "runAt": run_at or _utcnow(),
            }
        )
        return OutboxJob.from_prisma(row)

    async def claim_batch(
        self,
        job_types: Sequence[str],
        batch_size: int,
        now: Optional[datetime] = None,
    ) -> List[OutboxJob]:
        """Atomically move up to ``batch_size`` due jobs to processing, oldest first."""
        rows = await self.db.query_raw(
            CLAIM_SQL, now or _utcnow(), list(job_types), batch_size
        )
        jobs = [OutboxJob.model_validate(row) for row in rows]
        jobs.sort(key=lambda job: job.created_at or datetime.min.replace(tzinfo=timezone.utc))
        if jobs:
            logger.info(f"Claimed {len(jobs)} outbox jobs ({', '.join(job_types)})")
        return jobs

    async def mark_completed(self, job: OutboxJob, note: Optional[str] = None) -> None:
        await self.db.outboxjob.update_many(
            where={"id": job.id, "status": "processing"},
            data={
                "status": "completed",
                "lastError": truncate_error(note) if note else None,
            },
        )

    async def mark_failed(self, job: OutboxJob, message: str) -> None:
        await self.db.outboxjob.update_many(
            where={"id": job.id, "status": "processing"},
            data={"status": "failed", "lastError": truncate_error(message)},
        )

    async def release(self, jobs: Sequence[OutboxJob]) -> int:
        """Return claimed jobs to pending without counting an attempt."""
        if not jobs:
            return 0
        return await self.db.outboxjob.update_many(
            where={"id": {"in": [job.id for job in jobs]}, "status": "processing"},
            data={"status": "pending"},
        )

    async def handle_failure(
        self, job: OutboxJob, error: BaseException, now: Optional[datetime] = None
    ) -> OutboxStatus:
        """
        Record a handler failure and move the job to its next state.

        Returns:
            The status the job was moved to
        """
        now = now or _utcnow()
        text = error_text(error)
        kind = classify_error(error)

        if kind == ErrorClass.STALE_REFERENCE:
            await self.mark_completed(job, note=f"skipped: {text}")
            logger.info(f"Skipped stale outbox job {job.id} ({job.job_type}): {text}")
            return OutboxStatus.COMPLETED

        if kind == ErrorClass.PERMANENT:
            await self.mark_failed(job, text)
            logger.warning(f"Outbox job {job.id} ({job.job_type}) failed permanently: {text}")
            return OutboxStatus.FAILED

        retry_count = job.retry_count + 1
        data: Dict[str, Any] = {"retryCount": retry_count, "lastError": text}
        if self.policy.should_retry(retry_count):
            status = OutboxStatus.PENDING
            data["runAt"] = self.policy.next_run_at(retry_count, now)
        else:
            status = OutboxStatus.FAILED
        data["status"] = status.value

        await self.db.outboxjob.update_many(
            where={"id": job.id, "status": "processing"}, data=data
        )
        logger.warning(
            f"Outbox job {job.id} ({job.job_type}) attempt {retry_count} failed "
            f"({kind.value}), now {status.value}: {text}"
        )
        return status

    async def recover_stale(
        self,
        job_types: Sequence[str],
        older_than: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Reset jobs stuck in processing (e.g. a crashed worker) back to pending."""
        now = now or _utcnow()
        cutoff = now - (older_than or timedelta(minutes=20))
        recovered = await self.db.outboxjob.update_many(
            where={
                "jobType": {"in": list(job_types)},
                "status": "processing",
                "updatedAt": {"lt": cutoff},
            },
            data={
                "status": "pending",
                "runAt": now,
                "lastError": STALE_RECOVERY_MESSAGE,
            },
        )
        if recovered:
            logger.warning(f"Recovered {recovered} stale outbox jobs")
        return recovered

    async def reset_failed(
        self, org_id: str, job_types: Sequence[str], now: Optional[datetime] = None
    ) -> int:
        """Requeue an organization's failed jobs for immediate processing."""
        return await self.db.outboxjob.update_many(
            where={
                "orgId": org_id,
                "jobType": {"in": list(job_types)},
                "status": "failed",
            },
            data={"status": "pending", "runAt": now or _utcnow(), "retryCount": 0},
        )
