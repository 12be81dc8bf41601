"""
Job-level errors raised by outbox handlers.

The worker maps these onto the row's next state: transient errors are retried
with backoff, permanent errors fail immediately, and stale references are
completed as skipped.
"""


class OutboxJobError(Exception):
    """Base class for handler errors with a known classification."""


class TransientJobError(OutboxJobError):
    """Retry later."""


class PermanentJobError(OutboxJobError):
    """Retrying cannot succeed."""


class StaleReferenceError(OutboxJobError):
    """The job refers to an entity that no longer exists."""

    code = "STALE_REFERENCE"


class JobTimeoutError(TransientJobError):
    """Handler did not finish within its timeout."""


class InvalidJobPayloadError(PermanentJobError):
    """Stored payload does not match the job type's schema."""
