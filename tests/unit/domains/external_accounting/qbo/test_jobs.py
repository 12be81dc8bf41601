# tests/unit/domains/external_accounting/qbo/test_jobs.py
"""
Tests for QBO outbox job handlers and the scheduled worker pass.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest

from src.domains.external_accounting.qbo.exceptions import SyncFailedError
from src.domains.external_accounting.qbo.jobs import (
    _job_note,
    build_qbo_handlers,
    run_qbo_outbox,
)
from src.domains.external_accounting.qbo.models import KeepaliveResult, SyncResult
from src.domains.outbox.exceptions import PermanentJobError
from src.domains.outbox.models import QBO_JOB_TYPES, WorkerRunResult, parse_payload
from tests.fixtures.outbox_fixtures import make_outbox_job

JOBS_MODULE = "src.domains.external_accounting.qbo.jobs"


class TestJobNote:
    def test_success_has_no_note(self) -> None:
        assert _job_note(SyncResult(success=True, qbo_id="1")) is None

    def test_skipped_result_becomes_skip_note(self) -> None:
        note = _job_note(
            SyncResult(success=False, skipped=True, error="No active QBO connection")
        )

        assert note == "skipped: No active QBO connection"

    def test_failure_raises_transient_error(self) -> None:
        with pytest.raises(SyncFailedError, match="QBO API Error 500"):
            _job_note(SyncResult(success=False, error="QBO API Error 500"))


class TestQBOHandlers:
    """Test suite for the handlers registered with the QBO worker."""

    @pytest.fixture
    def sync(self) -> Mock:
        sync = Mock()
        sync.sync_invoice = AsyncMock(return_value=SyncResult(success=True, qbo_id="77"))
        sync.sync_payment = AsyncMock(
            return_value=SyncResult(success=False, skipped=True, error="No active QBO connection")
        )
        return sync

    @pytest.mark.asyncio
    async def test_invoice_handler_passes_job_org(self, sync: Mock, test_org_id: str) -> None:
        handler = build_qbo_handlers(sync)["qbo_sync_invoice"]
        job = make_outbox_job(job_type="qbo_sync_invoice", payload={"invoiceId": "inv-1"})

        note = await handler(job, parse_payload(job.job_type, job.payload))

        assert note is None
        sync.sync_invoice.assert_called_once_with("inv-1", test_org_id)

    @pytest.mark.asyncio
    async def test_payment_handler_reports_skip(self, sync: Mock, test_org_id: str) -> None:
        handler = build_qbo_handlers(sync)["qbo_sync_payment"]
        job = make_outbox_job(job_type="qbo_sync_payment", payload={"payment_id": "pay-1"})

        note = await handler(job, parse_payload(job.job_type, job.payload))

        assert note.startswith("skipped")
        sync.sync_payment.assert_called_once_with("pay-1", test_org_id)

    @pytest.mark.asyncio
    async def test_job_without_org_is_permanent_failure(self, sync: Mock) -> None:
        handler = build_qbo_handlers(sync)["qbo_sync_invoice"]
        job = make_outbox_job(
            job_type="qbo_sync_invoice", payload={"invoice_id": "inv-1"}, org_id=None
        )

        with pytest.raises(PermanentJobError):
            await handler(job, parse_payload(job.job_type, job.payload))

        sync.sync_invoice.assert_not_called()


class TestRunQBOOutbox:
    @pytest.mark.asyncio
    async def test_keepalive_and_recovery_run_before_batch(self, mock_prisma: Mock) -> None:
        calls = []

        connections = Mock()
        connections.keepalive_sweep = AsyncMock(
            side_effect=lambda: calls.append("keepalive")
            or KeepaliveResult(checked=2, refreshed=1, failed=1)
        )
        outbox = Mock()
        outbox.recover_stale = AsyncMock(
            side_effect=lambda *args, **kwargs: calls.append("recover") or 3
        )
        worker = Mock()
        worker.process_batch = AsyncMock(
            side_effect=lambda: calls.append("batch")
            or WorkerRunResult(processed=4, failed=1, skipped=2)
        )

        with patch(f"{JOBS_MODULE}.QBOConnectionManager", return_value=connections), patch(
            f"{JOBS_MODULE}.OutboxService", return_value=outbox
        ), patch(f"{JOBS_MODULE}.QBOSyncService"), patch(
            f"{JOBS_MODULE}.OutboxWorker", return_value=worker
        ) as mock_worker_cls:
            result = await run_qbo_outbox(mock_prisma)

        assert calls == ["keepalive", "recover", "batch"]
        assert result.processed == 4
        assert result.failed == 1
        assert result.skipped == 2
        assert result.recovered_stale == 3
        assert result.keepalive.refreshed == 1

        recover_args = outbox.recover_stale.call_args
        assert recover_args.args[0] == QBO_JOB_TYPES
        assert recover_args.kwargs["older_than"] == timedelta(minutes=20)

        worker_kwargs = mock_worker_cls.call_args.kwargs
        assert worker_kwargs["job_types"] == QBO_JOB_TYPES
        assert worker_kwargs["batch_size"] == 25
        assert worker_kwargs["service"] is outbox
        assert worker_kwargs["include_failures"] is True
        assert set(worker_kwargs["handlers"]) == set(QBO_JOB_TYPES)
