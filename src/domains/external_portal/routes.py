# src/domains/external_portal/routes.py
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Cookie, Depends, Path, Response, status
from pydantic import BaseModel

from prisma import Prisma
from src.core.database import get_db
from src.shared.cron import require_internal_secret

from .dependencies import (
    clear_session_cookie,
    get_external_session,
    get_optional_external_session,
    set_session_cookie,
)
from .models import (
    AuthenticateRequest,
    AuthenticateResponse,
    ExternalPortalAccountResponse,
    ExternalPortalSession,
    GrantUpdateResult,
    PinRequest,
    PinValidationResult,
    SetAccountStatusRequest,
    TokenType,
)
from .pins import PortalPinService
from .service import ExternalPortalAuthService

# Endpoints used by clients and bidders holding an access link
router = APIRouter(prefix="/external-portal", tags=["External Portal"])

# Builder-side management, called by the Arc app server
admin_router = APIRouter(
    prefix="/orgs/{org_id}/external-portal",
    tags=["External Portal"],
    dependencies=[Depends(require_internal_secret)],
)


class GrantCheckResponse(BaseModel):
    granted: bool


@router.post(
    "/{token_type}/{token}/auth",
    response_model=AuthenticateResponse,
    operation_id="authenticateExternalPortalAccount",
)
async def authenticate_external_portal_account(
    token_type: TokenType,
    token: str,
    request: AuthenticateRequest,
    response: Response,
    db: Prisma = Depends(get_db),
) -> AuthenticateResponse:
    """
    Claim or sign in to an external portal account through an access link.

    On success a session cookie is set and the link is granted to the account.

    Raises:
        HTTP 404: Link invalid or revoked
        HTTP 401: Wrong email or password
        HTTP 403: Account paused or revoked
    """
    issued = await ExternalPortalAuthService(db).authenticate_with_token(
        token=token,
        token_type=token_type,
        mode=request.mode,
        email=request.email,
        password=request.password,
        full_name=request.full_name,
    )
    set_session_cookie(response, issued.raw_token)
    return AuthenticateResponse(account=issued.account, expires_at=issued.expires_at)


@router.get(
    "/session",
    response_model=ExternalPortalSession,
    operation_id="getExternalPortalSession",
)
async def get_external_portal_session(
    session: ExternalPortalSession = Depends(get_external_session),
) -> ExternalPortalSession:
    return session


@router.post(
    "/sign-out",
    status_code=status.HTTP_204_NO_CONTENT,
    operation_id="signOutExternalPortal",
)
async def sign_out_external_portal(
    response: Response,
    external_portal_session: Optional[str] = Cookie(None),
    db: Prisma = Depends(get_db),
) -> None:
    await ExternalPortalAuthService(db).sign_out(external_portal_session)
    clear_session_cookie(response)


@router.get(
    "/{token_type}/{token}/access",
    response_model=GrantCheckResponse,
    operation_id="checkExternalPortalGrant",
)
async def check_external_portal_grant(
    token_type: TokenType,
    token: str,
    session: Optional[ExternalPortalSession] = Depends(get_optional_external_session),
    db: Prisma = Depends(get_db),
) -> GrantCheckResponse:
    """Whether the current session's account holds an active grant for this link."""
    service = ExternalPortalAuthService(db)
    context = await service.resolve_token(token_type, token)
    if not context:
        return GrantCheckResponse(granted=False)
    granted = await service.has_grant_for_token(
        session, context.org_id, context.token_id, token_type
    )
    return GrantCheckResponse(granted=granted)


@router.post(
    "/{token_type}/{token}/pin",
    response_model=PinValidationResult,
    operation_id="validateExternalPortalPin",
)
async def validate_external_portal_pin(
    token_type: TokenType,
    token: str,
    request: PinRequest,
    db: Prisma = Depends(get_db),
) -> PinValidationResult:
    return await PortalPinService(db).validate_pin(token_type, token, request.pin)


@admin_router.get(
    "/projects/{project_id}/accounts",
    response_model=List[ExternalPortalAccountResponse],
    operation_id="listProjectExternalPortalAccounts",
)
async def list_project_external_portal_accounts(
    org_id: UUID, project_id: UUID, db: Prisma = Depends(get_db)
) -> List[ExternalPortalAccountResponse]:
    return await ExternalPortalAuthService(db).list_project_accounts(
        str(org_id), str(project_id)
    )


@admin_router.patch(
    "/accounts/{account_id}/status",
    response_model=ExternalPortalAccountResponse,
    operation_id="setExternalPortalAccountStatus",
)
async def set_external_portal_account_status(
    org_id: UUID,
    account_id: UUID,
    request: SetAccountStatusRequest,
    db: Prisma = Depends(get_db),
) -> ExternalPortalAccountResponse:
    """Pausing or revoking an account ends all of its sessions immediately."""
    return await ExternalPortalAuthService(db).set_account_status(
        str(org_id), str(account_id), request.status
    )


@admin_router.post(
    "/bid-invites/{invite_id}/{action}",
    response_model=GrantUpdateResult,
    operation_id="updateBidInviteGrants",
)
async def update_bid_invite_grants(
    org_id: UUID,
    invite_id: UUID,
    action: Literal["pause", "resume", "revoke"] = Path(...),
    db: Prisma = Depends(get_db),
) -> GrantUpdateResult:
    """Apply a status to every grant made through the invite's bid links."""
    service = ExternalPortalAuthService(db)
    handlers = {
        "pause": service.pause_bid_invite_grants,
        "resume": service.resume_bid_invite_grants,
        "revoke": service.revoke_bid_invite_grants,
    }
    updated = await handlers[action](str(org_id), str(invite_id))
    return GrantUpdateResult(updated=updated)


@admin_router.put(
    "/links/{token_type}/{token_id}/pin",
    status_code=status.HTTP_204_NO_CONTENT,
    operation_id="setAccessLinkPin",
)
async def set_access_link_pin(
    org_id: UUID,
    token_type: TokenType,
    token_id: UUID,
    request: PinRequest,
    db: Prisma = Depends(get_db),
) -> None:
    await PortalPinService(db).set_pin(str(org_id), token_type, str(token_id), request.pin)


@admin_router.delete(
    "/links/{token_type}/{token_id}/pin",
    status_code=status.HTTP_204_NO_CONTENT,
    operation_id="removeAccessLinkPin",
)
async def remove_access_link_pin(
    org_id: UUID,
    token_type: TokenType,
    token_id: UUID,
    db: Prisma = Depends(get_db),
) -> None:
    await PortalPinService(db).remove_pin(str(org_id), token_type, str(token_id))
