# src/domains/external_accounting/qbo/connection.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx

from prisma import Json, Prisma
from src.core.crypto import TokenDecryptionError, decrypt_token, encrypt_token
from src.core.settings import settings
from src.domains.events.service import EventChannel, EventService
from src.domains.outbox.models import QBO_JOB_TYPES
from src.shared.exceptions import (
    IntegrationAuthenticationError,
    IntegrationConnectionError,
    IntegrationNotFoundError,
    IntegrationTokenExpiredError,
)

from .auth import QBOAuthService
from .client import QBOClient
from .exceptions import QBOCredentialsUnreadableError, QBOError, QBOTokenError
from .invoice_numbers import InvoiceNumberPattern, detect_invoice_number_pattern
from .models import (
    AccessToken,
    KeepaliveResult,
    OutboxQueueCounts,
    QBOAuthUrlResponse,
    QBOConnectionSettings,
    QBOConnectionSummary,
    QBOConnectResponse,
    QBODiagnostics,
    QBODisconnectResponse,
    QBOSettingsUpdate,
    RecentFailure,
    RefreshResult,
)
from .types import QBOTokenResponse

logger = logging.getLogger(__name__)

RECENT_FAILURE_LIMIT = 5
# Held until the surrounding transaction ends
CONNECTION_LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtext('qbo_connection:' || $1))"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QBOConnectionManager:
    """
    Owns the lifecycle of an organization's QuickBooks connection.

    Tokens are stored encrypted. Concurrent refreshes are reconciled through a
    conditional update on the previously read refresh token, so whichever
    writer lands first wins and the others adopt the persisted credential.
    """

    def __init__(
        self,
        db: Prisma,
        auth: Optional[QBOAuthService] = None,
        events: Optional[EventService] = None,
        client_factory: Callable[[str, str], QBOClient] = QBOClient,
    ):
        self.db = db
        self.auth = auth or QBOAuthService()
        self.events = events or EventService(db)
        self.client_factory = client_factory

    async def _find_active(self, org_id: str) -> Any:
        return await self.db.qboconnection.find_first(
            where={"orgId": org_id, "status": "active"},
            order={"connectedAt": "desc"},
        )

    async def get_connection(self, org_id: str) -> Optional[QBOConnectionSummary]:
        """Return the organization's active connection, if any."""
        connection = await self._find_active(org_id)
        if not connection:
            return None
        return QBOConnectionSummary.from_prisma(connection)

    def _needs_refresh(self, connection: Any, now: datetime) -> bool:
        window = timedelta(minutes=settings.QBO_TOKEN_REFRESH_WINDOW_MINUTES)
        return connection.tokenExpiresAt - now <= window

    async def get_access_token(self, org_id: str) -> Optional[AccessToken]:
        """
        Get a usable access token for the organization, refreshing if close to expiry.

        Args:
            org_id: Organization ID

        Returns:
            AccessToken, or None when there is no active connection or the
            token could not be refreshed and is already expired

        Raises:
            QBOCredentialsUnreadableError: If the stored tokens cannot be
                decrypted; the error is recorded on the connection first
        """
        connection = await self._find_active(org_id)
        if not connection:
            return None

        try:
            return await self._usable_access_token(connection)
        except TokenDecryptionError as e:
            raise await self._credentials_unreadable(connection, e) from e

    async def _credentials_unreadable(
        self, connection: Any, error: TokenDecryptionError
    ) -> QBOCredentialsUnreadableError:
        unreadable = QBOCredentialsUnreadableError(connection.id)
        logger.error(
            f"Stored QBO token for connection {connection.id} cannot be decrypted: {error}"
        )
        await self.record_error(connection.id, str(unreadable))
        return unreadable

    async def _usable_access_token(self, connection: Any) -> Optional[AccessToken]:
        now = _utcnow()
        if not self._needs_refresh(connection, now):
            return self._to_access_token(connection)

        try:
            tokens = await self._rotate_tokens(connection)
        except QBOTokenError as e:
            await self._record_refresh_failure(connection, e)
            if connection.tokenExpiresAt > now:
                return self._to_access_token(connection)
            return None

        if tokens is None:
            return await self._reload_access_token(connection.id)

        return AccessToken(
            token=tokens.access_token,
            realm_id=connection.realmId,
            connection_id=connection.id,
        )

    async def refresh_now(self, org_id: str) -> RefreshResult:
        """
        Force a token refresh regardless of expiry.

        Raises:
            IntegrationNotFoundError: If there is no active connection
            IntegrationTokenExpiredError: If the grant was rejected and the
                connection is now expired, or the stored tokens are unreadable
            IntegrationConnectionError: For transient refresh failures
        """
        connection = await self._find_active(org_id)
        if not connection:
            raise IntegrationNotFoundError("No active QBO connection")

        try:
            tokens = await self._rotate_tokens(connection)
        except QBOTokenError as e:
            expired = await self._record_refresh_failure(connection, e)
            if expired:
                raise IntegrationTokenExpiredError(f"QBO token refresh failed: {e}")
            raise IntegrationConnectionError(f"QBO token refresh failed: {e}")
        except TokenDecryptionError as e:
            unreadable = await self._credentials_unreadable(connection, e)
            raise IntegrationTokenExpiredError(str(unreadable)) from e

        if tokens is None:
            current = await self.db.qboconnection.find_unique(
                where={"id": connection.id}
            )
            if not current or current.status != "active":
                raise IntegrationNotFoundError("No active QBO connection")
            remaining = int((current.tokenExpiresAt - _utcnow()).total_seconds())
            return RefreshResult(success=True, token_expires_in_seconds=remaining)

        logger.info(f"QBO token manually refreshed for connection {connection.id}")
        return RefreshResult(success=True, token_expires_in_seconds=tokens.expires_in)

    async def keepalive_sweep(self, limit: Optional[int] = None) -> KeepaliveResult:
        """
        Refresh active connections whose refresh token nears expiry.

        QBO refresh tokens lapse after ~100 days without use, so idle
        organizations are refreshed proactively within the configured horizon.
        """
        horizon = _utcnow() + timedelta(days=settings.QBO_KEEPALIVE_HORIZON_DAYS)
        connections = await self.db.qboconnection.find_many(
            where={
                "status": "active",
                "OR": [
                    {"refreshTokenExpiresAt": None},
                    {"refreshTokenExpiresAt": {"lte": horizon}},
                ],
            },
            order={"tokenExpiresAt": "asc"},
            take=limit or settings.QBO_KEEPALIVE_BATCH_SIZE,
        )

        result = KeepaliveResult()
        for connection in connections:
            result.checked += 1
            try:
                await self._rotate_tokens(connection)
                result.refreshed += 1
            except QBOTokenError as e:
                await self._record_refresh_failure(connection, e)
                result.failed += 1
            except TokenDecryptionError as e:
                await self._credentials_unreadable(connection, e)
                result.failed += 1

        if result.checked:
            logger.info(
                f"QBO keepalive checked={result.checked} "
                f"refreshed={result.refreshed} failed={result.failed}"
            )
        return result

    async def _rotate_tokens(self, connection: Any) -> Optional[QBOTokenResponse]:
        """
        Refresh and persist a new token pair.

        Returns:
            The new tokens, or None if another writer rotated first

        Raises:
            QBOTokenError: If the token endpoint rejects the refresh
        """
        tokens = await self.auth.refresh(decrypt_token(connection.refreshToken))

        now = _utcnow()
        data: dict[str, Any] = {
            "accessToken": encrypt_token(tokens.access_token),
            "refreshToken": encrypt_token(tokens.refresh_token),
            "tokenExpiresAt": now + timedelta(seconds=tokens.expires_in),
            "refreshFailureCount": 0,
            "lastError": None,
            "lastRefreshedAt": now,
        }
        if tokens.x_refresh_token_expires_in:
            data["refreshTokenExpiresAt"] = now + timedelta(
                seconds=tokens.x_refresh_token_expires_in
            )

        updated = await self.db.qboconnection.update_many(
            where={
                "id": connection.id,
                "refreshToken": connection.refreshToken,
                "status": "active",
            },
            data=data,
        )
        if not updated:
            logger.info(
                f"QBO token for connection {connection.id} was rotated concurrently"
            )
            return None
        return tokens

    async def _reload_access_token(self, connection_id: str) -> Optional[AccessToken]:
        current = await self.db.qboconnection.find_unique(where={"id": connection_id})
        if not current or current.status != "active":
            return None
        return self._to_access_token(current)

    async def _record_refresh_failure(self, connection: Any, error: QBOTokenError) -> bool:
        """
        Persist a failed refresh. Returns True when the connection is now expired.
        """
        failures = (connection.refreshFailureCount or 0) + 1
        expired = (
            error.is_invalid_grant
            or failures >= settings.QBO_REFRESH_FAILURE_THRESHOLD
        )
        data: dict[str, Any] = {
            "refreshFailureCount": failures,
            "lastError": str(error)[:500],
        }
        if expired:
            data["status"] = "expired"

        await self.db.qboconnection.update_many(
            where={"id": connection.id, "refreshToken": connection.refreshToken},
            data=data,
        )
        logger.warning(
            f"QBO token refresh failed for connection {connection.id} "
            f"(failures={failures}, expired={expired}): {error}"
        )
        return expired

    def _to_access_token(self, connection: Any) -> AccessToken:
        return AccessToken(
            token=decrypt_token(connection.accessToken),
            realm_id=connection.realmId,
            connection_id=connection.id,
        )

    async def start_connection(self, org_id: str, user_id: str) -> QBOAuthUrlResponse:
        """Build the Intuit consent URL for an organization."""
        auth_url, expires_at = self.auth.build_authorization_url(org_id, user_id)
        return QBOAuthUrlResponse(
            auth_url=auth_url, expires_at=expires_at, organization_id=org_id
        )

    async def complete_connection(
        self, code: str, state: str, realm_id: str
    ) -> QBOConnectResponse:
        """
        Complete the OAuth connection using the callback parameters.

        Raises:
            IntegrationAuthenticationError: For invalid state or a rejected code
        """
        state_payload = self.auth.validate_state_token(state)
        try:
            tokens = await self.auth.exchange_code(code)
        except QBOTokenError as e:
            raise IntegrationAuthenticationError(str(e))

        company_name = None
        try:
            info = await self.client_factory(
                tokens.access_token, realm_id
            ).get_company_info()
            company_name = info.CompanyName
        except (QBOError, httpx.HTTPError) as e:
            logger.warning(f"Unable to fetch QBO company info for realm {realm_id}: {e}")

        summary = await self.upsert_connection(
            org_id=state_payload.org_id,
            realm_id=realm_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            refresh_expires_in=tokens.x_refresh_token_expires_in,
            connected_by=state_payload.user_id,
            company_name=company_name,
        )
        return QBOConnectResponse(
            message="QuickBooks connection established successfully",
            connection_id=summary.id,
            company_name=company_name,
            organization_id=state_payload.org_id,
        )

    async def _detect_numbering(
        self, access_token: str, realm_id: str
    ) -> InvoiceNumberPattern:
        try:
            client = self.client_factory(access_token, realm_id)
            last_number = await client.get_last_invoice_number()
        except (QBOError, httpx.HTTPError) as e:
            logger.warning(
                f"Unable to detect QBO invoice pattern, defaulting to numeric: {e}"
            )
            return InvoiceNumberPattern()
        return detect_invoice_number_pattern(None if last_number == "0" else last_number)

    async def upsert_connection(
        self,
        org_id: str,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        refresh_expires_in: Optional[int] = None,
        connected_by: Optional[str] = None,
        company_name: Optional[str] = None,
    ) -> QBOConnectionSummary:
        """
        Store a freshly authorized connection as the organization's only active one.

        Existing active rows are demoted and the new row inserted in one
        transaction, serialized per organization by an advisory lock so
        concurrent callbacks cannot both leave an active row.
        """
        pattern = await self._detect_numbering(access_token, realm_id)
        connection_settings = QBOConnectionSettings(
            invoice_number_pattern=pattern.invoice_number_pattern,
            invoice_number_prefix=pattern.invoice_number_prefix,
            last_known_invoice_number=pattern.last_known_invoice_number,
        )

        now = _utcnow()
        data: dict[str, Any] = {
            "orgId": org_id,
            "realmId": realm_id,
            "companyName": company_name,
            "accessToken": encrypt_token(access_token),
            "refreshToken": encrypt_token(refresh_token),
            "tokenExpiresAt": now + timedelta(seconds=expires_in),
            "status": "active",
            "connectedBy": connected_by,
            "connectedAt": now,
            "lastRefreshedAt": now,
            "settings": Json(connection_settings.model_dump()),
        }
        if refresh_expires_in:
            data["refreshTokenExpiresAt"] = now + timedelta(seconds=refresh_expires_in)

        async with self.db.tx() as tx:
            await tx.execute_raw(CONNECTION_LOCK_SQL, org_id)
            await tx.qboconnection.update_many(
                where={"orgId": org_id, "status": "active"},
                data={"status": "disconnected", "disconnectedAt": now},
            )
            created = await tx.qboconnection.create(data=data)

        logger.info(f"QBO connected for org {org_id}, connection {created.id}")
        await self.events.try_record_event(
            org_id,
            "qbo_connected",
            payload={"company_name": company_name, "connection_id": created.id},
            entity_type="integration",
            entity_id=org_id,
            channel=EventChannel.INTEGRATION,
        )
        return QBOConnectionSummary.from_prisma(created)

    async def disconnect(
        self, org_id: str, user_id: Optional[str] = None
    ) -> QBODisconnectResponse:
        """
        Disconnect the organization's active connection.

        Raises:
            IntegrationNotFoundError: If there is no active connection
        """
        connection = await self._find_active(org_id)
        if not connection:
            raise IntegrationNotFoundError("No active QBO connection")

        disconnected_at = _utcnow()
        await self.db.qboconnection.update_many(
            where={"orgId": org_id, "status": "active"},
            data={"status": "disconnected", "disconnectedAt": disconnected_at},
        )

        await self.events.try_record_event(
            org_id,
            "qbo_disconnected",
            payload={"disconnected_by": user_id, "connection_id": connection.id},
            entity_type="integration",
            entity_id=org_id,
            channel=EventChannel.INTEGRATION,
        )
        return QBODisconnectResponse(
            message="QuickBooks connection disconnected successfully",
            disconnected_at=disconnected_at,
            organization_id=org_id,
        )

    async def update_settings(
        self, org_id: str, patch: QBOSettingsUpdate
    ) -> QBOConnectionSettings:
        """Merge a partial settings update into the active connection."""
        connection = await self._find_active(org_id)
        if not connection:
            raise IntegrationNotFoundError("No active QBO connection")

        current = QBOConnectionSettings.from_raw(connection.settings)
        merged = current.model_copy(update=patch.model_dump(exclude_unset=True))
        await self.db.qboconnection.update(
            where={"id": connection.id},
            data={"settings": Json(merged.model_dump())},
        )
        return merged

    async def record_error(self, connection_id: str, message: str) -> None:
        await self.db.qboconnection.update(
            where={"id": connection_id}, data={"lastError": message[:500]}
        )

    async def mark_synced(self, connection_id: str) -> None:
        await self.db.qboconnection.update(
            where={"id": connection_id},
            data={"lastSyncAt": _utcnow(), "lastError": None},
        )

    async def diagnostics(self, org_id: str) -> QBODiagnostics:
        """Read-only sync health snapshot for operators."""
        connection = await self._find_active(org_id)
        job_filter = {"orgId": org_id, "jobType": {"in": list(QBO_JOB_TYPES)}}

        in_flight = await self.db.outboxjob.count(
            where={**job_filter, "status": {"in": ["pending", "processing"]}}
        )
        failed = await self.db.outboxjob.count(where={**job_filter, "status": "failed"})
        recent = await self.db.outboxjob.find_many(
            where={**job_filter, "status": "failed"},
            order={"updatedAt": "desc"},
            take=RECENT_FAILURE_LIMIT,
        )
        failed_invoices = await self.db.invoice.count(
            where={"orgId": org_id, "qboSyncStatus": "error"}
        )

        return QBODiagnostics(
            connection=QBOConnectionSummary.from_prisma(connection)
            if connection
            else None,
            outbox=OutboxQueueCounts(pending_or_processing=in_flight, failed=failed),
            recent_failures=[
                RecentFailure(
                    job_type=row.jobType,
                    last_error=row.lastError,
                    updated_at=row.updatedAt,
                )
                for row in recent
            ],
            failed_invoice_sync_count=failed_invoices,
        )
