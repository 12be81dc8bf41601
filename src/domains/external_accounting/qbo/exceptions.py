"""
QuickBooks Online integration errors.
"""

from typing import Any, List, Optional

from src.domains.outbox.exceptions import PermanentJobError, TransientJobError

from .types import QBOFault

DUPLICATE_DOC_NUMBER_CODE = "6140"


class QBOError(Exception):
    """Non-2xx response from the QBO accounting API."""

    def __init__(self, status: int, payload: Any = None):
        self.status = status
        self.payload = payload if payload is not None else {}
        self.faults = _parse_faults(self.payload)
        detail = "; ".join(
            f.detail or f.message or "" for f in self.faults if f.detail or f.message
        )
        super().__init__(
            f"QBO API Error {status}" + (f": {detail}" if detail else "")
        )

    @property
    def is_rate_limit(self) -> bool:
        return self.status == 429

    @property
    def is_auth_error(self) -> bool:
        return self.status == 401

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500

    @property
    def is_duplicate_doc_number(self) -> bool:
        """Whether QBO rejected the invoice because its DocNumber is taken."""
        if any(f.code == DUPLICATE_DOC_NUMBER_CODE for f in self.faults):
            return True
        if self.faults:
            # Structured faults without 6140 only count when they name the DocNumber
            return any(
                "docnumber" in f"{f.message} {f.detail} {f.element}".lower()
                for f in self.faults
            )
        return is_duplicate_doc_number_text(str(self.payload))


class QBOTokenError(Exception):
    """Token endpoint rejected a code exchange or refresh."""

    def __init__(self, message: str, status: Optional[int] = None, error: str = ""):
        super().__init__(message)
        self.status = status
        self.error = error

    @property
    def is_invalid_grant(self) -> bool:
        return self.error == "invalid_grant" or "invalid_grant" in str(self)


def is_duplicate_doc_number_text(text: str) -> bool:
    lowered = text.lower()
    return (
        "docnumber" in lowered or "duplicate" in lowered or "already exists" in lowered
    )


def _parse_faults(payload: Any) -> List[QBOFault]:
    if not isinstance(payload, dict):
        return []
    fault = payload.get("Fault") or payload.get("fault") or {}
    errors = fault.get("Error") or fault.get("error") or []
    if isinstance(errors, dict):
        errors = [errors]
    faults = []
    for entry in errors:
        if not isinstance(entry, dict):
            continue
        faults.append(
            QBOFault(
                code=str(entry["code"]) if entry.get("code") is not None else None,
                message=entry.get("Message") or entry.get("message"),
                detail=entry.get("Detail") or entry.get("detail"),
                element=entry.get("element"),
            )
        )
    return faults


class InvoiceNotSyncedError(PermanentJobError):
    """A payment cannot be pushed before its invoice exists in QBO."""


class SyncFailedError(TransientJobError):
    """A sync attempt failed and its error state has been recorded."""


class QBOCredentialsUnreadableError(PermanentJobError):
    """Stored tokens cannot be decrypted; the organization must reconnect."""

    def __init__(self, connection_id: str):
        super().__init__("Stored QBO credentials cannot be decrypted, reconnect required")
        self.connection_id = connection_id
