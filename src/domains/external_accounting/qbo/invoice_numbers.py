"""
Invoice number sequencing shared with QuickBooks.

QBO enforces unique DocNumbers per company, so local invoice numbers follow
the pattern detected on the connected company (plain numeric, alpha prefix,
or year prefix).
"""

import logging
import re
from typing import TYPE_CHECKING, Literal, Optional

import httpx
from pydantic import BaseModel

from prisma import Prisma

from .exceptions import QBOCredentialsUnreadableError, QBOError
from .models import QBOConnectionSettings

if TYPE_CHECKING:
    from .connection import QBOConnectionManager

logger = logging.getLogger(__name__)

_NUMERIC = re.compile(r"^(\d+)$")
_ALPHA_PREFIX = re.compile(r"^([A-Za-z-]+)(\d+)$")
_YEAR_PREFIX = re.compile(r"^(\d{4}-)(\d+)$")
_NON_DIGITS = re.compile(r"\D")

DEFAULT_PAD_LENGTH = 4
FALLBACK_INVOICE_NUMBER = "1001"


class InvoiceNumberPattern(BaseModel):
    invoice_number_pattern: Literal["numeric", "prefix", "custom"] = "numeric"
    invoice_number_prefix: Optional[str] = None
    last_known_invoice_number: Optional[str] = None


class NextInvoiceNumber(BaseModel):
    number: str
    source: Literal["qbo", "local"]


def detect_invoice_number_pattern(doc_number: Optional[str]) -> InvoiceNumberPattern:
    """Infer the numbering scheme from the company's most recent DocNumber."""
    if not doc_number:
        return InvoiceNumberPattern()

    if _NUMERIC.match(doc_number):
        return InvoiceNumberPattern(last_known_invoice_number=doc_number)

    for pattern in (_ALPHA_PREFIX, _YEAR_PREFIX):
        match = pattern.match(doc_number)
        if match:
            return InvoiceNumberPattern(
                invoice_number_pattern="prefix",
                invoice_number_prefix=match.group(1),
                last_known_invoice_number=doc_number,
            )

    return InvoiceNumberPattern(
        invoice_number_pattern="custom", last_known_invoice_number=doc_number
    )


def increment_invoice_number(
    current: str, settings: Optional[QBOConnectionSettings] = None
) -> str:
    """
    Return the number following ``current``, preserving prefix and zero padding.

    Examples:
        "1041" -> "1042", "INV-0099" -> "INV-0100", "2024-007" -> "2024-008"
    """
    prefix = settings.invoice_number_prefix if settings else None
    if settings and settings.invoice_number_pattern == "prefix" and prefix:
        numeric_portion = current.replace(prefix, "", 1)
        pad = len(numeric_portion) or DEFAULT_PAD_LENGTH
        digits = numeric_portion if numeric_portion.isdigit() else "0"
        return f"{prefix}{int(digits) + 1:0{pad}d}"

    match = _NUMERIC.match(current)
    if match:
        return str(int(match.group(1)) + 1)

    for pattern in (_ALPHA_PREFIX, _YEAR_PREFIX):
        match = pattern.match(current)
        if match:
            head, digits = match.groups()
            return f"{head}{int(digits) + 1:0{len(digits)}d}"

    numeric_portion = _NON_DIGITS.sub("", current)
    if numeric_portion:
        return str(int(numeric_portion) + 1)

    return FALLBACK_INVOICE_NUMBER


def next_number_after(
    current: str, last_qbo_number: str, settings: Optional[QBOConnectionSettings]
) -> str:
    """
    Pick a replacement number for an invoice whose DocNumber collided.

    Uses the successor of the company's latest number. If that would not move
    past the colliding number, the colliding number is incremented instead.
    """
    candidate = increment_invoice_number(last_qbo_number, settings)
    if candidate == current or _numeric_value(candidate) <= _numeric_value(current):
        return increment_invoice_number(current, settings)
    return candidate


def _numeric_value(number: str) -> int:
    digits = _NON_DIGITS.sub("", number)
    return int(digits) if digits else 0


class InvoiceNumberService:
    """Suggests the next invoice number, preferring the QBO sequence."""

    def __init__(self, db: Prisma, connections: "QBOConnectionManager"):
        self.db = db
        self.connections = connections

    async def get_next_invoice_number(self, org_id: str) -> NextInvoiceNumber:
        connection = await self.connections.get_connection(org_id)

        if connection and connection.settings.invoice_number_sync:
            try:
                access = await self.connections.get_access_token(org_id)
                if access:
                    client = self.connections.client_factory(
                        access.token, access.realm_id
                    )
                    last_number = await client.get_last_invoice_number()
                    if last_number == "0" and connection.settings.last_known_invoice_number:
                        last_number = connection.settings.last_known_invoice_number
                    return NextInvoiceNumber(
                        number=increment_invoice_number(
                            last_number, connection.settings
                        ),
                        source="qbo",
                    )
            except (QBOError, QBOCredentialsUnreadableError, httpx.HTTPError) as e:
                logger.warning(
                    f"Falling back to local invoice sequence for org {org_id}: {e}"
                )

        last_invoice = await self.db.invoice.find_first(
            where={"orgId": org_id}, order={"createdAt": "desc"}
        )
        last_number = last_invoice.invoiceNumber if last_invoice else "0"
        return NextInvoiceNumber(
            number=increment_invoice_number(
                last_number, connection.settings if connection else None
            ),
            source="local",
        )
