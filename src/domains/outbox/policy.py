# src/domains/outbox/policy.py
import asyncio
from datetime import datetime, timedelta
from enum import Enum

import httpx
from pydantic import BaseModel, Field

from src.core.settings import settings
from src.shared.exceptions import ConfigurationError

from .exceptions import (
    PermanentJobError,
    StaleReferenceError,
    TransientJobError,
)

STALE_REFERENCE_CODES = {"SHEET_VERSION_NOT_FOUND", StaleReferenceError.code}
STALE_REFERENCE_MESSAGES = ("Sheet version not found",)


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    STALE_REFERENCE = "stale_reference"
    UNKNOWN = "unknown"


class RetryPolicy(BaseModel):
    """Exponential backoff: retry n runs ``base**n * unit`` after the failure."""

    max_retries: int = Field(3, ge=1)
    backoff_base: int = Field(3, ge=2)
    backoff_unit: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.OUTBOX_MAX_RETRIES,
            backoff_base=settings.OUTBOX_BACKOFF_BASE,
            backoff_unit=timedelta(minutes=settings.OUTBOX_BACKOFF_UNIT_MINUTES),
        )

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def backoff(self, retry_count: int) -> timedelta:
        return self.backoff_unit * (self.backoff_base**retry_count)

    def next_run_at(self, retry_count: int, now: datetime) -> datetime:
        return now + self.backoff(retry_count)


def classify_error(error: BaseException) -> ErrorClass:
    """Map a handler exception onto the outbox's retry semantics."""
    if isinstance(error, StaleReferenceError):
        return ErrorClass.STALE_REFERENCE
    if getattr(error, "code", None) in STALE_REFERENCE_CODES:
        return ErrorClass.STALE_REFERENCE
    if any(message in str(error) for message in STALE_REFERENCE_MESSAGES):
        return ErrorClass.STALE_REFERENCE

    if isinstance(error, (PermanentJobError, ConfigurationError)):
        return ErrorClass.PERMANENT
    if isinstance(
        error, (TransientJobError, asyncio.TimeoutError, httpx.TransportError)
    ):
        return ErrorClass.TRANSIENT
    return ErrorClass.UNKNOWN
