# src/domains/external_accounting/qbo/routes.py
import logging
from typing import Optional
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from prisma import Prisma
from src.core.database import get_db
from src.core.settings import settings
from src.domains.outbox.models import OutboxJob
from src.shared.cron import require_cron_secret, require_internal_secret
from src.shared.exceptions import IntegrationNotFoundError, IntegrationTokenExpiredError

from .connection import QBOConnectionManager
from .exceptions import QBOCredentialsUnreadableError
from .invoice_numbers import InvoiceNumberService, NextInvoiceNumber
from .jobs import QBOOutboxRunResult, run_keepalive, run_qbo_outbox
from .models import (
    KeepaliveResult,
    QBOAuthUrlResponse,
    QBOConnectionSettings,
    QBOConnectionStatusResponse,
    QBOConnectRequest,
    QBODiagnostics,
    QBODisconnectRequest,
    QBODisconnectResponse,
    QBOSettingsUpdate,
    RefreshResult,
    RetryFailedResult,
    SyncResult,
)
from .sync import QBOSyncService
from .webhooks import QBOWebhookProcessor, WebhookRunResult

logger = logging.getLogger(__name__)

# Organization-scoped management endpoints, called by the Arc app server
router = APIRouter(
    prefix="/integrations/qbo",
    tags=["QuickBooks"],
)

# Scheduler entry points
cron_router = APIRouter(
    prefix="/qbo",
    tags=["QuickBooks"],
    dependencies=[Depends(require_cron_secret)],
)

_internal = [Depends(require_internal_secret)]


def _settings_redirect(**params: str) -> RedirectResponse:
    base = settings.APP_BASE_URL.rstrip("/")
    return RedirectResponse(
        url=f"{base}/settings/integrations?{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.post(
    "/{org_id}/connect",
    response_model=QBOAuthUrlResponse,
    dependencies=_internal,
    operation_id="startQboConnection",
)
async def start_qbo_connection(
    org_id: UUID,
    request: QBOConnectRequest,
    db: Prisma = Depends(get_db),
) -> QBOAuthUrlResponse:
    """
    Start the QuickBooks OAuth flow for an organization.

    Returns the Intuit consent URL. The signed state token it carries expires
    after 30 minutes.
    """
    return await QBOConnectionManager(db).start_connection(str(org_id), request.user_id)


@router.get("/callback", operation_id="qboOAuthCallback")
async def qbo_oauth_callback(
    code: str = Query(None, description="OAuth authorization code"),
    state: str = Query(None, description="JWT state token"),
    realm_id: str = Query(None, alias="realmId", description="QBO company ID"),
    error: str = Query(None, description="OAuth error code"),
    db: Prisma = Depends(get_db),
) -> RedirectResponse:
    """
    Complete the OAuth flow and redirect back to the integrations settings page.

    **No authentication required** - callback from Intuit
    """
    if error:
        return _settings_redirect(qbo="error", message=error)
    if not code or not state or not realm_id:
        return _settings_redirect(qbo="error", message="Missing required parameters")

    try:
        result = await QBOConnectionManager(db).complete_connection(code, state, realm_id)
    except HTTPException as e:
        logger.warning(f"QBO OAuth callback failed: {e.detail}")
        return _settings_redirect(qbo="error", message=str(e.detail))

    return _settings_redirect(qbo="connected", company=result.company_name or "")


@router.get(
    "/{org_id}",
    response_model=QBOConnectionStatusResponse,
    dependencies=_internal,
    operation_id="getQboConnection",
)
async def get_qbo_connection(
    org_id: UUID, db: Prisma = Depends(get_db)
) -> QBOConnectionStatusResponse:
    connection = await QBOConnectionManager(db).get_connection(str(org_id))
    return QBOConnectionStatusResponse(
        connected=connection is not None, connection=connection
    )


@router.get(
    "/{org_id}/diagnostics",
    response_model=QBODiagnostics,
    dependencies=_internal,
    operation_id="getQboDiagnostics",
)
async def get_qbo_diagnostics(
    org_id: UUID, db: Prisma = Depends(get_db)
) -> QBODiagnostics:
    return await QBOConnectionManager(db).diagnostics(str(org_id))


@router.post(
    "/{org_id}/refresh",
    response_model=RefreshResult,
    dependencies=_internal,
    operation_id="refreshQboToken",
)
async def refresh_qbo_token(org_id: UUID, db: Prisma = Depends(get_db)) -> RefreshResult:
    """
    Force a token refresh.

    Raises:
        HTTP 404: No active connection
        HTTP 401: Grant revoked, reconnect required
        HTTP 500: Transient refresh failure
    """
    return await QBOConnectionManager(db).refresh_now(str(org_id))


@router.post(
    "/{org_id}/disconnect",
    response_model=QBODisconnectResponse,
    dependencies=_internal,
    operation_id="disconnectQbo",
)
async def disconnect_qbo(
    org_id: UUID,
    request: QBODisconnectRequest,
    db: Prisma = Depends(get_db),
) -> QBODisconnectResponse:
    return await QBOConnectionManager(db).disconnect(str(org_id), request.user_id)


@router.patch(
    "/{org_id}/settings",
    response_model=QBOConnectionSettings,
    dependencies=_internal,
    operation_id="updateQboSettings",
)
async def update_qbo_settings(
    org_id: UUID,
    patch: QBOSettingsUpdate,
    db: Prisma = Depends(get_db),
) -> QBOConnectionSettings:
    return await QBOConnectionManager(db).update_settings(str(org_id), patch)


@router.post(
    "/{org_id}/retry-failed",
    response_model=RetryFailedResult,
    dependencies=_internal,
    operation_id="retryFailedQboSync",
)
async def retry_failed_qbo_sync(
    org_id: UUID, db: Prisma = Depends(get_db)
) -> RetryFailedResult:
    """Requeue invoices, payments and outbox jobs that failed to sync."""
    return await QBOSyncService(db).retry_failed_sync_jobs(str(org_id))


@router.post(
    "/{org_id}/invoices/{invoice_id}/sync",
    response_model=SyncResult,
    dependencies=_internal,
    operation_id="syncQboInvoice",
)
async def sync_qbo_invoice(
    org_id: UUID, invoice_id: UUID, db: Prisma = Depends(get_db)
) -> SyncResult:
    """
    Sync one invoice immediately, outside the outbox.

    Raises:
        HTTP 404: Invoice not found
        HTTP 401: Stored credentials unreadable, reconnect required
    """
    sync = QBOSyncService(db)
    invoice = await db.invoice.find_first(
        where={"id": str(invoice_id), "orgId": str(org_id)}
    )
    if not invoice:
        raise IntegrationNotFoundError("Invoice not found")
    try:
        return await sync.sync_invoice(str(invoice_id), str(org_id))
    except QBOCredentialsUnreadableError as e:
        raise IntegrationTokenExpiredError(str(e))


@cron_router.post(
    "/process-outbox",
    response_model=QBOOutboxRunResult,
    operation_id="processQboOutbox",
)
async def process_qbo_outbox(db: Prisma = Depends(get_db)) -> QBOOutboxRunResult:
    return await run_qbo_outbox(db)


@cron_router.post(
    "/keepalive",
    response_model=KeepaliveResult,
    operation_id="qboKeepalive",
)
async def qbo_keepalive(
    limit: int = Query(None, ge=1, le=100, description="Maximum connections to refresh"),
    db: Prisma = Depends(get_db),
) -> KeepaliveResult:
    return await run_keepalive(db, limit)


@cron_router.post(
    "/process-webhooks",
    response_model=WebhookRunResult,
    operation_id="processQboWebhooks",
)
async def process_qbo_webhooks(db: Prisma = Depends(get_db)) -> WebhookRunResult:
    return await QBOWebhookProcessor(db).process_pending()


@router.post(
    "/{org_id}/invoices/{invoice_id}/enqueue",
    response_model=Optional[OutboxJob],
    dependencies=_internal,
    operation_id="enqueueQboInvoiceSync",
)
async def enqueue_qbo_invoice_sync(
    org_id: UUID, invoice_id: UUID, db: Prisma = Depends(get_db)
) -> Optional[OutboxJob]:
    """Queue an invoice for sync; returns null when auto-sync is off."""
    return await QBOSyncService(db).enqueue_invoice_sync(str(invoice_id), str(org_id))


@router.post(
    "/{org_id}/payments/{payment_id}/enqueue",
    response_model=Optional[OutboxJob],
    dependencies=_internal,
    operation_id="enqueueQboPaymentSync",
)
async def enqueue_qbo_payment_sync(
    org_id: UUID, payment_id: UUID, db: Prisma = Depends(get_db)
) -> Optional[OutboxJob]:
    """Queue a payment for sync; returns null when payment sync is off."""
    return await QBOSyncService(db).enqueue_payment_sync(str(payment_id), str(org_id))


@router.get(
    "/{org_id}/next-invoice-number",
    response_model=NextInvoiceNumber,
    dependencies=_internal,
    operation_id="getNextInvoiceNumber",
)
async def get_next_invoice_number(
    org_id: UUID, db: Prisma = Depends(get_db)
) -> NextInvoiceNumber:
    """Suggest the next invoice number, following the QBO sequence when connected."""
    connections = QBOConnectionManager(db)
    return await InvoiceNumberService(db, connections).get_next_invoice_number(str(org_id))
