"""
Outbox job rows and their typed payloads.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import InvalidJobPayloadError


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    DELIVER_NOTIFICATION = "deliver_notification"
    REFRESH_DRAWING_SHEETS_LIST = "refresh_drawing_sheets_list"
    GENERATE_DRAWING_TILES = "generate_drawing_tiles"
    QBO_SYNC_INVOICE = "qbo_sync_invoice"
    QBO_SYNC_PAYMENT = "qbo_sync_payment"


QBO_JOB_TYPES = (JobType.QBO_SYNC_INVOICE.value, JobType.QBO_SYNC_PAYMENT.value)
GENERAL_JOB_TYPES = (
    JobType.DELIVER_NOTIFICATION.value,
    JobType.REFRESH_DRAWING_SHEETS_LIST.value,
    JobType.GENERATE_DRAWING_TILES.value,
)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DeliverNotificationPayload(_Payload):
    notification_id: str = Field(
        validation_alias=AliasChoices("notificationId", "notification_id")
    )


class RefreshDrawingSheetsListPayload(_Payload):
    pass


class GenerateDrawingTilesPayload(_Payload):
    sheet_version_id: str = Field(
        validation_alias=AliasChoices("sheetVersionId", "sheet_version_id")
    )


class QBOSyncInvoicePayload(_Payload):
    invoice_id: str = Field(validation_alias=AliasChoices("invoice_id", "invoiceId"))


class QBOSyncPaymentPayload(_Payload):
    payment_id: str = Field(validation_alias=AliasChoices("payment_id", "paymentId"))


JobPayload = Union[
    DeliverNotificationPayload,
    RefreshDrawingSheetsListPayload,
    GenerateDrawingTilesPayload,
    QBOSyncInvoicePayload,
    QBOSyncPaymentPayload,
]

PAYLOAD_MODELS: Dict[str, Type[_Payload]] = {
    JobType.DELIVER_NOTIFICATION.value: DeliverNotificationPayload,
    JobType.REFRESH_DRAWING_SHEETS_LIST.value: RefreshDrawingSheetsListPayload,
    JobType.GENERATE_DRAWING_TILES.value: GenerateDrawingTilesPayload,
    JobType.QBO_SYNC_INVOICE.value: QBOSyncInvoicePayload,
    JobType.QBO_SYNC_PAYMENT.value: QBOSyncPaymentPayload,
}


def _load_json_object(value: Any) -> Dict[str, Any]:
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, dict):
        raise ValueError("payload must be a JSON object")
    return value


def parse_payload(job_type: str, raw: Any) -> JobPayload:
    """
    Decode a stored payload into the model registered for its job type.

    Raises:
        InvalidJobPayloadError: If the type is unknown or the payload is malformed
    """
    model = PAYLOAD_MODELS.get(job_type)
    if model is None:
        raise InvalidJobPayloadError(f"No payload schema for job type {job_type}")
    try:
        return model.model_validate(_load_json_object(raw))
    except (ValidationError, ValueError) as e:
        raise InvalidJobPayloadError(f"Invalid {job_type} payload: {e}") from e


class OutboxJob(BaseModel):
    """A claimed or enqueued outbox row."""

    id: str
    org_id: Optional[str] = None
    job_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: OutboxStatus = OutboxStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: Any) -> Dict[str, Any]:
        try:
            return _load_json_object(value)
        except ValueError:
            return {"_raw": value}

    @field_validator("id", "org_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if value is not None else None

    @classmethod
    def from_prisma(cls, row: Any) -> "OutboxJob":
        """Create a job from a Prisma OutboxJob model."""
        return cls(
            id=row.id,
            org_id=row.orgId,
            job_type=row.jobType,
            payload=row.payload,
            status=getattr(row.status, "value", row.status),
            retry_count=row.retryCount or 0,
            last_error=row.lastError,
            run_at=row.runAt,
            created_at=row.createdAt,
        )


class JobFailure(BaseModel):
    id: str
    job_type: str
    error: str


class WorkerRunResult(BaseModel):
    """Summary of one worker invocation."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: Optional[List[JobFailure]] = None


class EnqueueRequest(BaseModel):
    job_type: JobType
    org_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    dedupe_keys: Optional[List[str]] = None
    run_at: Optional[datetime] = None
