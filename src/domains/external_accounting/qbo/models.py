# src/domains/external_accounting/qbo/models.py
import json
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field


class QBOConnectionSettings(BaseModel):
    """Per-connection sync preferences stored as JSON on the connection row."""

    auto_sync: bool = Field(True, description="Sync invoices automatically")
    sync_payments: bool = Field(True, description="Push recorded payments to QBO")
    customer_sync_mode: Literal["create_new", "match_existing"] = Field(
        "create_new", description="How invoice customers are resolved"
    )
    default_income_account_id: Optional[str] = Field(
        None, description="Income account used when creating the service item"
    )
    invoice_number_sync: bool = Field(
        True, description="Follow the QBO invoice number sequence"
    )
    invoice_number_pattern: Literal["numeric", "prefix", "custom"] = "numeric"
    invoice_number_prefix: Optional[str] = None
    last_known_invoice_number: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "QBOConnectionSettings":
        if raw is None:
            return cls()
        if isinstance(raw, str):
            raw = json.loads(raw or "{}")
        return cls.model_validate(raw)


class QBOSettingsUpdate(BaseModel):
    """Partial settings patch; unset fields are left untouched."""

    auto_sync: Optional[bool] = None
    sync_payments: Optional[bool] = None
    customer_sync_mode: Optional[Literal["create_new", "match_existing"]] = None
    default_income_account_id: Optional[str] = None
    invoice_number_sync: Optional[bool] = None


class QBOConnectionSummary(BaseModel):
    """Connection details safe to return to clients (no tokens)."""

    id: str
    org_id: str
    realm_id: str
    company_name: Optional[str] = None
    status: str
    token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    refresh_failure_count: int = 0
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    connected_at: Optional[datetime] = None
    settings: QBOConnectionSettings = Field(default_factory=QBOConnectionSettings)

    @classmethod
    def from_prisma(cls, connection: Any) -> "QBOConnectionSummary":
        """Create summary from Prisma QboConnection model."""
        status = connection.status
        return cls(
            id=connection.id,
            org_id=connection.orgId,
            realm_id=connection.realmId,
            company_name=connection.companyName,
            status=getattr(status, "value", status),
            token_expires_at=connection.tokenExpiresAt,
            refresh_token_expires_at=connection.refreshTokenExpiresAt,
            refresh_failure_count=connection.refreshFailureCount or 0,
            last_sync_at=connection.lastSyncAt,
            last_error=connection.lastError,
            connected_at=connection.connectedAt,
            settings=QBOConnectionSettings.from_raw(connection.settings),
        )


class QBOConnectionStatusResponse(BaseModel):
    connected: bool = Field(..., description="Whether an active connection exists")
    connection: Optional[QBOConnectionSummary] = None


class AccessToken(BaseModel):
    """Decrypted, currently valid credential for one company."""

    token: str
    realm_id: str
    connection_id: str


class RefreshResult(BaseModel):
    success: bool
    token_expires_in_seconds: int


class KeepaliveResult(BaseModel):
    checked: int = 0
    refreshed: int = 0
    failed: int = 0


class QBOStateTokenPayload(BaseModel):
    """JWT payload for OAuth state token."""

    org_id: str = Field(..., description="Organization ID")
    user_id: str = Field(..., description="User starting the connection")
    csrf_token: str = Field(..., description="CSRF protection token")
    issued_at: datetime = Field(..., description="Token issue time")
    expires_at: datetime = Field(..., description="Token expiry time")


class QBOAuthUrlResponse(BaseModel):
    auth_url: str = Field(..., description="Intuit OAuth authorization URL")
    expires_at: datetime = Field(..., description="When the state token expires")
    organization_id: str = Field(..., description="Organization ID")


class QBOConnectResponse(BaseModel):
    message: str
    connection_id: str
    company_name: Optional[str] = None
    organization_id: str


class QBODisconnectResponse(BaseModel):
    message: str
    disconnected_at: datetime
    organization_id: str


class OutboxQueueCounts(BaseModel):
    pending_or_processing: int = 0
    failed: int = 0


class RecentFailure(BaseModel):
    job_type: str
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None


class QBODiagnostics(BaseModel):
    """Read-only operator view of one organization's sync health."""

    connection: Optional[QBOConnectionSummary] = None
    outbox: OutboxQueueCounts = Field(default_factory=OutboxQueueCounts)
    recent_failures: List[RecentFailure] = Field(default_factory=list)
    failed_invoice_sync_count: int = 0


class SyncResult(BaseModel):
    success: bool
    skipped: bool = False
    qbo_id: Optional[str] = None
    error: Optional[str] = None
    invoice_number_changed: bool = False
    new_invoice_number: Optional[str] = None


class RetryFailedResult(BaseModel):
    invoices: int = 0
    payments: int = 0
    outbox: int = 0


class QBOConnectRequest(BaseModel):
    user_id: str = Field(..., description="User starting the connection")


class QBODisconnectRequest(BaseModel):
    user_id: Optional[str] = Field(None, description="User disconnecting")
