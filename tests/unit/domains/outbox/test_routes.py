# tests/unit/domains/outbox/test_routes.py
"""
Tests for the general outbox cron and enqueue endpoints.
"""
from unittest.mock import AsyncMock, Mock, patch

from fastapi import status
from fastapi.testclient import TestClient

from src.domains.outbox.jobs import build_general_handlers
from src.domains.outbox.models import JobFailure, JobType, OutboxJob, WorkerRunResult
from src.shared.exceptions import ConfigurationError


class TestOutboxRoutes:
    def test_process_outbox_returns_counts(self, client: TestClient) -> None:
        result = WorkerRunResult(processed=2, failed=1, skipped=0)

        with patch(
            "src.domains.outbox.routes.run_general_outbox",
            AsyncMock(return_value=result),
        ):
            response = client.post("/api/v1/jobs/process-outbox")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"processed": 2, "failed": 1, "skipped": 0}

    def test_process_outbox_includes_failures_when_present(
        self, client: TestClient
    ) -> None:
        result = WorkerRunResult(
            failed=1,
            failures=[JobFailure(id="j-1", job_type="deliver_notification", error="boom")],
        )

        with patch(
            "src.domains.outbox.routes.run_general_outbox",
            AsyncMock(return_value=result),
        ):
            response = client.post("/api/v1/jobs/process-outbox")

        assert response.json()["failures"][0]["error"] == "boom"

    def test_configuration_error_is_500(self, client: TestClient) -> None:
        with patch(
            "src.domains.outbox.routes.run_general_outbox",
            AsyncMock(side_effect=ConfigurationError("TOKEN_ENCRYPTION_KEY is not configured")),
        ):
            response = client.post("/api/v1/jobs/process-outbox")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"detail": "Service is not configured"}

    def test_rejected_without_secret_in_production(self, client: TestClient) -> None:
        with patch("src.shared.cron.settings") as mock_settings:
            mock_settings.is_production = True
            mock_settings.CRON_SECRET = "cron-secret"
            response = client.post("/api/v1/jobs/process-outbox")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_enqueue_job(self, client: TestClient, test_org_id: str) -> None:
        job = OutboxJob(
            id="j-1",
            org_id=test_org_id,
            job_type="generate_drawing_tiles",
            payload={"sheetVersionId": "sv-1"},
        )

        with patch("src.domains.outbox.routes.OutboxService") as mock_service_class:
            mock_service_class.return_value.enqueue = AsyncMock(return_value=job)
            response = client.post(
                "/api/v1/jobs/enqueue",
                json={
                    "job_type": "generate_drawing_tiles",
                    "org_id": test_org_id,
                    "payload": {"sheetVersionId": "sv-1"},
                    "dedupe_keys": ["sheetVersionId"],
                },
            )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["id"] == "j-1"
        mock_service_class.return_value.enqueue.assert_called_once_with(
            "generate_drawing_tiles",
            {"sheetVersionId": "sv-1"},
            org_id=test_org_id,
            dedupe_keys=["sheetVersionId"],
            run_at=None,
        )

    def test_enqueue_rejects_unknown_job_type(self, client: TestClient) -> None:
        response = client.post("/api/v1/jobs/enqueue", json={"job_type": "send_fax"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestGeneralHandlers:
    def test_registers_notification_and_drawing_jobs(self, mock_prisma: Mock) -> None:
        handlers = build_general_handlers(mock_prisma)

        assert set(handlers) == {
            JobType.DELIVER_NOTIFICATION.value,
            JobType.REFRESH_DRAWING_SHEETS_LIST.value,
            JobType.GENERATE_DRAWING_TILES.value,
        }
