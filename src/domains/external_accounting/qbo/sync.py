# src/domains/external_accounting/qbo/sync.py
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from prisma import Json, Prisma
from src.domains.events.service import EventChannel, EventService
from src.domains.outbox.exceptions import StaleReferenceError
from src.domains.outbox.models import QBO_JOB_TYPES, JobType, OutboxJob
from src.domains.outbox.service import OutboxService

from .client import QBOClient
from .connection import QBOConnectionManager
from .exceptions import InvoiceNotSyncedError, QBOCredentialsUnreadableError, QBOError
from .invoice_numbers import next_number_after
from .models import QBOConnectionSettings, RetryFailedResult, SyncResult
from .types import (
    QBOInvoice,
    QBOInvoiceLine,
    QBOLinkedTxn,
    QBOPayment,
    QBOPaymentLine,
    QBORef,
    QBOSalesItemLineDetail,
    QBOServiceItem,
)

logger = logging.getLogger(__name__)

NO_CONNECTION_MESSAGE = "No active QBO connection"
DEFAULT_CUSTOMER_NAME = "Customer"
RETRY_FAILED_LIMIT = 50
PAYMENT_REF_MAX_LENGTH = 21

# Errors a sync attempt records instead of raising
SYNC_ERRORS = (QBOError, httpx.HTTPError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, str):
        value = json.loads(value or "{}")
    return dict(value) if isinstance(value, dict) else {}


def _qbo_date(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()


def resolve_customer_name(invoice: Any) -> str:
    title = (invoice.title or "").strip()
    return title or DEFAULT_CUSTOMER_NAME


def invoice_lines_from_rows(
    rows: List[Any], item: QBOServiceItem
) -> List[QBOInvoiceLine]:
    """Map local invoice lines (amounts in cents) onto QBO sales item lines."""
    ordered = sorted(rows, key=lambda row: row.sortOrder or 0)
    return [
        QBOInvoiceLine(
            Amount=round(row.quantity * row.unitPriceCents / 100, 2),
            Description=row.description,
            SalesItemLineDetail=QBOSalesItemLineDetail(
                ItemRef=QBORef(value=item.value, name=item.name),
                Qty=row.quantity,
                UnitPrice=row.unitPriceCents / 100,
            ),
        )
        for row in ordered
    ]


@dataclass
class _SyncContext:
    """Lookups memoized for the duration of a single sync call."""

    client: QBOClient
    connection_id: str
    customers: Dict[str, QBORef] = field(default_factory=dict)
    items: Dict[str, QBOServiceItem] = field(default_factory=dict)


class QBOSyncService:
    """
    Pushes invoices and payments to QuickBooks and tracks per-entity sync state.

    Every attempt leaves its outcome on the invoice row, the sync record and
    the connection before returning, so a failing job can be retried by the
    outbox without losing what happened.
    """

    def __init__(
        self,
        db: Prisma,
        connections: Optional[QBOConnectionManager] = None,
        outbox: Optional[OutboxService] = None,
        events: Optional[EventService] = None,
    ):
        self.db = db
        self.events = events or EventService(db)
        self.connections = connections or QBOConnectionManager(db, events=self.events)
        self.outbox = outbox or OutboxService(db)

    async def _settings(self, org_id: str) -> QBOConnectionSettings:
        connection = await self.connections.get_connection(org_id)
        return connection.settings if connection else QBOConnectionSettings()

    async def _find_sync_record(
        self, org_id: str, entity_type: str, entity_id: str
    ) -> Any:
        return await self.db.qbosyncrecord.find_unique(
            where={
                "orgId_entityType_entityId": {
                    "orgId": org_id,
                    "entityType": entity_type,
                    "entityId": entity_id,
                }
            }
        )

    async def _upsert_sync_record(
        self,
        org_id: str,
        connection_id: Optional[str],
        entity_type: str,
        entity_id: str,
        qbo_id: Optional[str] = None,
        sync_token: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        now = _utcnow()
        if error is None:
            state: Dict[str, Any] = {
                "status": "synced",
                "qboId": qbo_id,
                "qboSyncToken": sync_token,
                "errorMessage": None,
                "lastSyncedAt": now,
            }
        else:
            state = {"status": "error", "errorMessage": error[:2000]}

        await self.db.qbosyncrecord.upsert(
            where={
                "orgId_entityType_entityId": {
                    "orgId": org_id,
                    "entityType": entity_type,
                    "entityId": entity_id,
                }
            },
            data={
                "create": {
                    "orgId": org_id,
                    "connectionId": connection_id,
                    "entityType": entity_type,
                    "entityId": entity_id,
                    **state,
                },
                "update": {"connectionId": connection_id, **state},
            },
        )

    async def _resolve_customer(
        self, ctx: _SyncContext, org_id: str, project_id: Optional[str], name: str
    ) -> QBORef:
        """
        Find the QBO customer for a project.

        A project's customer is remembered as a ``customer`` sync record, so
        later invoices on the same project reuse it instead of searching QBO.
        """
        if project_id:
            record = await self._find_sync_record(org_id, "customer", project_id)
            if record and record.qboId:
                return QBORef(value=record.qboId, name=name)

        ref = ctx.customers.get(name)
        if ref is None:
            customer = await ctx.client.get_or_create_customer(name)
            ref = QBORef(value=str(customer.Id), name=customer.DisplayName)
            ctx.customers[name] = ref

        if project_id:
            await self._upsert_sync_record(
                org_id, ctx.connection_id, "customer", project_id, qbo_id=ref.value
            )
        return ref

    async def _service_item(
        self, ctx: _SyncContext, income_account_id: Optional[str]
    ) -> QBOServiceItem:
        key = income_account_id or ""
        if key not in ctx.items:
            ctx.items[key] = await ctx.client.get_default_service_item(income_account_id)
        return ctx.items[key]

    async def _push_invoice(self, client: QBOClient, invoice: QBOInvoice) -> QBOInvoice:
        if not invoice.Id:
            return await client.create_invoice(invoice)
        if not invoice.SyncToken:
            current = await client.get_invoice(invoice.Id)
            invoice = invoice.model_copy(update={"SyncToken": current.SyncToken})
        return await client.update_invoice(invoice)

    async def _renumber(
        self,
        invoice: Any,
        client: QBOClient,
        connection_settings: QBOConnectionSettings,
    ) -> str:
        """Persist a new invoice number after a DocNumber collision."""
        last_number = await client.get_last_invoice_number()
        new_number = next_number_after(
            invoice.invoiceNumber, last_number, connection_settings
        )
        metadata = _as_dict(invoice.metadata)
        metadata.update(
            {
                "invoice_number_changed": True,
                "invoice_number_previous": invoice.invoiceNumber,
                "invoice_number_new": new_number,
            }
        )
        await self.db.invoice.update(
            where={"id": invoice.id},
            data={
                "invoiceNumber": new_number,
                "metadata": Json(metadata),
                "qboSyncStatus": "pending",
            },
        )
        logger.info(
            f"Renumbered invoice {invoice.id} from {invoice.invoiceNumber} to "
            f"{new_number} after QBO DocNumber conflict"
        )
        return new_number

    async def sync_invoice(self, invoice_id: str, org_id: str) -> SyncResult:
        """
        Create or update an invoice in QBO.

        A DocNumber collision renumbers the invoice and retries once. Any other
        QBO failure is recorded on the invoice, its sync record and the
        connection, and returned as an unsuccessful result.

        Raises:
            StaleReferenceError: If the invoice no longer exists
            QBOCredentialsUnreadableError: If the stored tokens cannot be
                decrypted; the invoice is marked as failed first
        """
        try:
            access = await self.connections.get_access_token(org_id)
        except QBOCredentialsUnreadableError as e:
            await self.db.invoice.update_many(
                where={"id": invoice_id, "orgId": org_id},
                data={"qboSyncStatus": "error"},
            )
            await self._upsert_sync_record(
                org_id, e.connection_id, "invoice", invoice_id, error=str(e)
            )
            raise
        if not access:
            await self.db.invoice.update_many(
                where={"id": invoice_id, "orgId": org_id},
                data={"qboSyncStatus": "skipped"},
            )
            return SyncResult(success=False, skipped=True, error=NO_CONNECTION_MESSAGE)

        invoice = await self.db.invoice.find_first(
            where={"id": invoice_id, "orgId": org_id}, include={"lines": True}
        )
        if not invoice:
            raise StaleReferenceError(f"Invoice not found ({invoice_id})")

        connection_settings = await self._settings(org_id)
        ctx = _SyncContext(
            client=self.connections.client_factory(access.token, access.realm_id),
            connection_id=access.connection_id,
        )
        new_number: Optional[str] = None

        try:
            customer = await self._resolve_customer(
                ctx, org_id, invoice.projectId, resolve_customer_name(invoice)
            )
            item = await self._service_item(
                ctx, connection_settings.default_income_account_id
            )
            existing = await self._find_sync_record(org_id, "invoice", invoice_id)

            payload = QBOInvoice(
                Id=existing.qboId if existing else None,
                SyncToken=existing.qboSyncToken if existing else None,
                DocNumber=invoice.invoiceNumber,
                TxnDate=_qbo_date(invoice.issueDate) or date.today().isoformat(),
                DueDate=_qbo_date(invoice.dueDate),
                CustomerRef=customer,
                Line=invoice_lines_from_rows(invoice.lines or [], item),
                PrivateNote=invoice.title,
            )

            try:
                pushed = await self._push_invoice(ctx.client, payload)
            except QBOError as e:
                if not e.is_duplicate_doc_number:
                    raise
                new_number = await self._renumber(invoice, ctx.client, connection_settings)
                pushed = await self._push_invoice(
                    ctx.client, payload.model_copy(update={"DocNumber": new_number})
                )
        except SYNC_ERRORS as e:
            message = str(e) or "QBO sync failed"
            await self._record_invoice_failure(org_id, invoice_id, access.connection_id, message)
            return SyncResult(success=False, error=message)

        await self._upsert_sync_record(
            org_id,
            access.connection_id,
            "invoice",
            invoice_id,
            qbo_id=pushed.Id,
            sync_token=pushed.SyncToken,
        )
        await self.db.invoice.update(
            where={"id": invoice_id},
            data={
                "qboId": pushed.Id,
                "qboSyncedAt": _utcnow(),
                "qboSyncStatus": "synced",
            },
        )
        await self.connections.mark_synced(access.connection_id)

        if new_number:
            await self.events.try_record_event(
                org_id,
                "invoice_number_changed",
                payload={
                    "previous_number": invoice.invoiceNumber,
                    "new_number": new_number,
                    "reason": "docnumber_conflict",
                },
                entity_type="invoice",
                entity_id=invoice_id,
                channel=EventChannel.NOTIFICATION,
            )

        logger.info(f"Synced invoice {invoice_id} to QBO invoice {pushed.Id}")
        return SyncResult(
            success=True,
            qbo_id=pushed.Id,
            invoice_number_changed=new_number is not None,
            new_invoice_number=new_number,
        )

    async def _record_invoice_failure(
        self, org_id: str, invoice_id: str, connection_id: str, message: str
    ) -> None:
        await self.db.invoice.update(
            where={"id": invoice_id}, data={"qboSyncStatus": "error"}
        )
        await self._upsert_sync_record(
            org_id, connection_id, "invoice", invoice_id, error=message
        )
        await self.connections.record_error(connection_id, message)
        logger.warning(f"QBO sync failed for invoice {invoice_id}: {message}")

    async def sync_payment(self, payment_id: str, org_id: str) -> SyncResult:
        """
        Record a payment against its invoice in QBO.

        Already-synced payments return their existing QBO id without calling
        the API.

        Raises:
            StaleReferenceError: If the payment no longer exists
            InvoiceNotSyncedError: If the payment's invoice has no QBO id yet
            QBOCredentialsUnreadableError: If the stored tokens cannot be decrypted
        """
        existing = await self._find_sync_record(org_id, "payment", payment_id)
        if existing and existing.qboId:
            return SyncResult(success=True, qbo_id=existing.qboId)

        try:
            access = await self.connections.get_access_token(org_id)
        except QBOCredentialsUnreadableError as e:
            await self._upsert_sync_record(
                org_id, e.connection_id, "payment", payment_id, error=str(e)
            )
            raise
        if not access:
            return SyncResult(success=False, skipped=True, error=NO_CONNECTION_MESSAGE)

        payment = await self.db.payment.find_first(
            where={"id": payment_id, "orgId": org_id}, include={"invoice": True}
        )
        if not payment:
            raise StaleReferenceError(f"Payment not found ({payment_id})")

        invoice = payment.invoice
        if not invoice or not invoice.qboId:
            raise InvoiceNotSyncedError("Invoice not synced to QBO")

        client = self.connections.client_factory(access.token, access.realm_id)
        amount = payment.amountCents / 100

        try:
            customer = await self._payment_customer(client, org_id, invoice.projectId)
            created = await client.create_payment(
                QBOPayment(
                    TotalAmt=amount,
                    CustomerRef=customer,
                    TxnDate=_qbo_date(payment.receivedAt),
                    PaymentRefNum=(payment.reference or "")[:PAYMENT_REF_MAX_LENGTH]
                    or None,
                    Line=[
                        QBOPaymentLine(
                            Amount=amount,
                            LinkedTxn=[QBOLinkedTxn(TxnId=invoice.qboId)],
                        )
                    ],
                )
            )
        except SYNC_ERRORS as e:
            message = str(e) or "QBO payment sync failed"
            await self._upsert_sync_record(
                org_id, access.connection_id, "payment", payment_id, error=message
            )
            await self.connections.record_error(access.connection_id, message)
            logger.warning(f"QBO sync failed for payment {payment_id}: {message}")
            return SyncResult(success=False, error=message)

        await self._upsert_sync_record(
            org_id,
            access.connection_id,
            "payment",
            payment_id,
            qbo_id=created.Id,
            sync_token=created.SyncToken,
        )
        await self.connections.mark_synced(access.connection_id)
        logger.info(f"Synced payment {payment_id} to QBO payment {created.Id}")
        return SyncResult(success=True, qbo_id=created.Id)

    async def _payment_customer(
        self, client: QBOClient, org_id: str, project_id: Optional[str]
    ) -> QBORef:
        if project_id:
            record = await self._find_sync_record(org_id, "customer", project_id)
            if record and record.qboId:
                return QBORef(value=record.qboId)
        customer = await client.get_or_create_customer(DEFAULT_CUSTOMER_NAME)
        return QBORef(value=str(customer.Id))

    async def enqueue_invoice_sync(
        self, invoice_id: str, org_id: str
    ) -> Optional[OutboxJob]:
        """Queue an invoice for sync, or mark it skipped when auto-sync is off."""
        connection = await self.connections.get_connection(org_id)
        if not connection or not connection.settings.auto_sync:
            await self.db.invoice.update_many(
                where={"id": invoice_id, "orgId": org_id},
                data={"qboSyncStatus": "skipped"},
            )
            return None

        return await self._queue_invoice(invoice_id, org_id)

    async def _queue_invoice(self, invoice_id: str, org_id: str) -> OutboxJob:
        await self.db.invoice.update_many(
            where={"id": invoice_id, "orgId": org_id},
            data={"qboSyncStatus": "pending"},
        )
        return await self.outbox.enqueue(
            JobType.QBO_SYNC_INVOICE.value,
            {"invoice_id": invoice_id},
            org_id=org_id,
            dedupe_keys=["invoice_id"],
        )

    async def enqueue_payment_sync(
        self, payment_id: str, org_id: str
    ) -> Optional[OutboxJob]:
        connection = await self.connections.get_connection(org_id)
        if not connection or not connection.settings.sync_payments:
            return None
        return await self._queue_payment(payment_id, org_id)

    async def _queue_payment(self, payment_id: str, org_id: str) -> OutboxJob:
        return await self.outbox.enqueue(
            JobType.QBO_SYNC_PAYMENT.value,
            {"payment_id": payment_id},
            org_id=org_id,
            dedupe_keys=["payment_id"],
        )

    async def retry_failed_sync_jobs(self, org_id: str) -> RetryFailedResult:
        """
        Requeue everything that failed to sync for an organization.

        Failed outbox rows are reset first so re-enqueued invoices and
        payments deduplicate against them.
        """
        outbox = await self.outbox.reset_failed(org_id, QBO_JOB_TYPES)

        invoices = await self.db.invoice.find_many(
            where={"orgId": org_id, "qboSyncStatus": "error"},
            order={"updatedAt": "asc"},
            take=RETRY_FAILED_LIMIT,
        )
        for invoice in invoices:
            await self._queue_invoice(invoice.id, org_id)

        payments = await self.db.qbosyncrecord.find_many(
            where={"orgId": org_id, "entityType": "payment", "status": "error"},
            order={"updatedAt": "asc"},
            take=RETRY_FAILED_LIMIT,
        )
        for record in payments:
            await self._queue_payment(record.entityId, org_id)

        logger.info(
            f"Requeued QBO sync for org {org_id}: invoices={len(invoices)} "
            f"payments={len(payments)} outbox={outbox}"
        )
        return RetryFailedResult(
            invoices=len(invoices), payments=len(payments), outbox=outbox
        )
