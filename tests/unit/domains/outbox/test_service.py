# tests/unit/domains/outbox/test_service.py
"""
Tests for OutboxService enqueue, claim and failure transitions.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List
from unittest.mock import AsyncMock, Mock

import pytest

from src.domains.outbox.exceptions import PermanentJobError, StaleReferenceError, TransientJobError
from src.domains.outbox.models import OutboxStatus
from src.domains.outbox.policy import RetryPolicy
from src.domains.outbox.service import (
    MAX_ERROR_LENGTH,
    STALE_RECOVERY_MESSAGE,
    OutboxService,
    build_dedupe_key,
)
from tests.fixtures.outbox_fixtures import make_outbox_job, make_outbox_row


class TestOutboxService:
    """Test suite for the outbox queue."""

    @pytest.fixture
    def outbox(self, mock_prisma: Mock, retry_policy: RetryPolicy) -> OutboxService:
        return OutboxService(mock_prisma, policy=retry_policy)

    @pytest.mark.asyncio
    async def test_enqueue_creates_pending_row(
        self, outbox: OutboxService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        mock_prisma.outboxjob.create = AsyncMock(return_value=make_outbox_row())

        job = await outbox.enqueue(
            "deliver_notification", {"notificationId": "n-1"}, org_id=test_org_id
        )

        assert job.id == "test-job-id"
        data = mock_prisma.outboxjob.create.call_args.kwargs["data"]
        assert data["status"] == "pending"
        assert data["retryCount"] == 0
        assert data["jobType"] == "deliver_notification"
        assert data["dedupeKey"] is None
        assert data["payload"].data == {"notificationId": "n-1"}
        mock_prisma.outboxjob.find_first.assert_not_called()

    @pytest.mark.asyncio
    async def test_enqueue_returns_existing_job_for_same_dedupe_key(
        self, outbox: OutboxService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        existing = make_outbox_row(job_id="existing-job", job_type="qbo_sync_invoice")
        mock_prisma.outboxjob.find_first = AsyncMock(return_value=existing)

        job = await outbox.enqueue(
            "qbo_sync_invoice",
            {"invoice_id": "inv-1"},
            org_id=test_org_id,
            dedupe_keys=["invoice_id"],
        )

        assert job.id == "existing-job"
        mock_prisma.outboxjob.create.assert_not_called()
        where = mock_prisma.outboxjob.find_first.call_args.kwargs["where"]
        assert where["status"] == {"in": ["pending", "processing"]}
        assert where["dedupeKey"] == build_dedupe_key(
            test_org_id, "qbo_sync_invoice", {"invoice_id": "inv-1"}, ["invoice_id"]
        )

    @pytest.mark.asyncio
    async def test_enqueue_with_dedupe_inserts_when_nothing_queued(
        self, outbox: OutboxService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        mock_prisma.outboxjob.find_first = AsyncMock(return_value=None)
        mock_prisma.outboxjob.create = AsyncMock(
            return_value=make_outbox_row(job_type="qbo_sync_invoice")
        )

        await outbox.enqueue(
            "qbo_sync_invoice",
            {"invoice_id": "inv-1"},
            org_id=test_org_id,
            dedupe_keys=["invoice_id"],
        )

        data = mock_prisma.outboxjob.create.call_args.kwargs["data"]
        assert data["dedupeKey"] is not None

    def test_dedupe_key_ignores_unrelated_payload_keys(self) -> None:
        first = build_dedupe_key("org", "qbo_sync_invoice", {"invoice_id": "1", "a": 1}, ["invoice_id"])
        second = build_dedupe_key("org", "qbo_sync_invoice", {"invoice_id": "1", "a": 2}, ["invoice_id"])
        other_org = build_dedupe_key("org-2", "qbo_sync_invoice", {"invoice_id": "1"}, ["invoice_id"])

        assert first == second
        assert first != other_org

    @pytest.mark.asyncio
    async def test_claim_batch_returns_jobs_oldest_first(
        self,
        outbox: OutboxService,
        mock_prisma: Mock,
        claimed_rows: List[Dict[str, Any]],
        fixed_now: datetime,
    ) -> None:
        mock_prisma.query_raw = AsyncMock(return_value=claimed_rows)

        jobs = await outbox.claim_batch(["deliver_notification"], 5, now=fixed_now)

        assert [job.id for job in jobs] == ["job-1", "job-2"]
        assert jobs[1].payload == {"notificationId": "n-2"}
        args = mock_prisma.query_raw.call_args.args
        assert "FOR UPDATE SKIP LOCKED" in args[0]
        assert args[1:] == (fixed_now, ["deliver_notification"], 5)

    @pytest.mark.asyncio
    async def test_mark_completed_stores_note(
        self, outbox: OutboxService, mock_prisma: Mock
    ) -> None:
        job = make_outbox_job()

        await outbox.mark_completed(job, note="skipped: email notifications disabled")

        mock_prisma.outboxjob.update_many.assert_called_once_with(
            where={"id": "test-job-id", "status": "processing"},
            data={
                "status": "completed",
                "lastError": "skipped: email notifications disabled",
            },
        )

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_backoff(
        self, outbox: OutboxService, mock_prisma: Mock, fixed_now: datetime
    ) -> None:
        job = make_outbox_job(retry_count=1)

        status = await outbox.handle_failure(job, TransientJobError("503"), now=fixed_now)

        assert status == OutboxStatus.PENDING
        data = mock_prisma.outboxjob.update_many.call_args.kwargs["data"]
        assert data["retryCount"] == 2
        assert data["status"] == "pending"
        assert data["runAt"] == fixed_now + timedelta(minutes=45)
        assert data["lastError"] == "503"

    @pytest.mark.asyncio
    async def test_transient_failure_fails_after_max_retries(
        self, outbox: OutboxService, mock_prisma: Mock, fixed_now: datetime
    ) -> None:
        job = make_outbox_job(retry_count=2)

        status = await outbox.handle_failure(job, ValueError("boom"), now=fixed_now)

        assert status == OutboxStatus.FAILED
        data = mock_prisma.outboxjob.update_many.call_args.kwargs["data"]
        assert data["retryCount"] == 3
        assert data["status"] == "failed"
        assert "runAt" not in data

    @pytest.mark.asyncio
    async def test_permanent_failure_fails_immediately(
        self, outbox: OutboxService, mock_prisma: Mock
    ) -> None:
        job = make_outbox_job()

        status = await outbox.handle_failure(job, PermanentJobError("Invoice not synced"))

        assert status == OutboxStatus.FAILED
        mock_prisma.outboxjob.update_many.assert_called_once_with(
            where={"id": "test-job-id", "status": "processing"},
            data={"status": "failed", "lastError": "Invoice not synced"},
        )

    @pytest.mark.asyncio
    async def test_stale_reference_completes_as_skipped(
        self, outbox: OutboxService, mock_prisma: Mock
    ) -> None:
        job = make_outbox_job()

        status = await outbox.handle_failure(job, StaleReferenceError("Notification not found"))

        assert status == OutboxStatus.COMPLETED
        data = mock_prisma.outboxjob.update_many.call_args.kwargs["data"]
        assert data == {
            "status": "completed",
            "lastError": "skipped: Notification not found",
        }

    @pytest.mark.asyncio
    async def test_error_text_is_truncated(
        self, outbox: OutboxService, mock_prisma: Mock
    ) -> None:
        job = make_outbox_job()

        await outbox.handle_failure(job, PermanentJobError("x" * 5000))

        data = mock_prisma.outboxjob.update_many.call_args.kwargs["data"]
        assert len(data["lastError"]) == MAX_ERROR_LENGTH

    @pytest.mark.asyncio
    async def test_release_returns_jobs_to_pending(
        self, outbox: OutboxService, mock_prisma: Mock
    ) -> None:
        mock_prisma.outboxjob.update_many = AsyncMock(return_value=2)
        jobs = [make_outbox_job("a"), make_outbox_job("b")]

        released = await outbox.release(jobs)

        assert released == 2
        mock_prisma.outboxjob.update_many.assert_called_once_with(
            where={"id": {"in": ["a", "b"]}, "status": "processing"},
            data={"status": "pending"},
        )

    @pytest.mark.asyncio
    async def test_release_nothing(self, outbox: OutboxService, mock_prisma: Mock) -> None:
        assert await outbox.release([]) == 0
        mock_prisma.outboxjob.update_many.assert_not_called()

    @pytest.mark.asyncio
    async def test_recover_stale_resets_old_processing_rows(
        self, outbox: OutboxService, mock_prisma: Mock, fixed_now: datetime
    ) -> None:
        mock_prisma.outboxjob.update_many = AsyncMock(return_value=3)

        recovered = await outbox.recover_stale(
            ["qbo_sync_invoice"], older_than=timedelta(minutes=20), now=fixed_now
        )

        assert recovered == 3
        call = mock_prisma.outboxjob.update_many.call_args.kwargs
        assert call["where"]["status"] == "processing"
        assert call["where"]["updatedAt"] == {"lt": fixed_now - timedelta(minutes=20)}
        assert call["data"] == {
            "status": "pending",
            "runAt": fixed_now,
            "lastError": STALE_RECOVERY_MESSAGE,
        }

    @pytest.mark.asyncio
    async def test_reset_failed_clears_retry_count(
        self, outbox: OutboxService, mock_prisma: Mock, fixed_now: datetime, test_org_id: str
    ) -> None:
        mock_prisma.outboxjob.update_many = AsyncMock(return_value=4)

        reset = await outbox.reset_failed(test_org_id, ["qbo_sync_invoice"], now=fixed_now)

        assert reset == 4
        mock_prisma.outboxjob.update_many.assert_called_once_with(
            where={
                "orgId": test_org_id,
                "jobType": {"in": ["qbo_sync_invoice"]},
                "status": "failed",
            },
            data={"status": "pending", "runAt": fixed_now, "retryCount": 0},
        )
