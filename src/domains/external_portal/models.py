# src/domains/external_portal/models.py
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

BCRYPT_MAX_BYTES = 72


class TokenType(str, Enum):
    PORTAL = "portal"
    BID = "bid"


class AuthMode(str, Enum):
    CLAIM = "claim"
    LOGIN = "login"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    REVOKED = "revoked"


class TokenContext(BaseModel):
    """The organization and row an access link resolves to."""

    token_id: str
    org_id: str
    token_type: TokenType


class ExternalPortalAccountResponse(BaseModel):
    id: str
    org_id: str
    email: str
    full_name: Optional[str] = None
    status: AccountStatus
    last_login_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    grant_count: Optional[int] = None

    @classmethod
    def from_prisma(cls, account: Any) -> "ExternalPortalAccountResponse":
        """Create response from Prisma ExternalPortalAccount model."""
        return cls(
            id=account.id,
            org_id=account.orgId,
            email=account.email,
            full_name=account.fullName,
            status=getattr(account.status, "value", account.status),
            last_login_at=account.lastLoginAt,
            paused_at=account.pausedAt,
            revoked_at=account.revokedAt,
            created_at=account.createdAt,
        )


class ExternalPortalSession(BaseModel):
    """A validated session and the account behind it."""

    id: str
    org_id: str
    account: ExternalPortalAccountResponse


class AuthenticateRequest(BaseModel):
    mode: AuthMode = Field(..., description="claim creates the account if needed")
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=8)
    full_name: Optional[str] = Field(None, max_length=200)

    @field_validator("password")
    @classmethod
    def _fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes")
        return value


class AuthenticateResponse(BaseModel):
    account: ExternalPortalAccountResponse
    expires_at: datetime


class IssuedSession(BaseModel):
    """Result of a successful authentication; the raw token goes in the cookie."""

    raw_token: str
    expires_at: datetime
    account: ExternalPortalAccountResponse


class SetAccountStatusRequest(BaseModel):
    status: AccountStatus


class PinRequest(BaseModel):
    pin: str = Field(..., min_length=4, max_length=12, pattern=r"^\d+$")


class PinValidationResult(BaseModel):
    valid: bool
    attempts_remaining: Optional[int] = None
    locked_until: Optional[datetime] = None


class GrantUpdateResult(BaseModel):
    updated: int
