# src/domains/external_portal/dependencies.py
from typing import Optional

from fastapi import Cookie, Depends, Response

from prisma import Prisma
from src.core.database import get_db
from src.core.settings import settings

from .exceptions import SessionRequiredError
from .models import ExternalPortalSession
from .service import ExternalPortalAuthService

SESSION_COOKIE_NAME = "external_portal_session"


def set_session_cookie(response: Response, raw_token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=raw_token,
        max_age=settings.EXTERNAL_PORTAL_SESSION_TTL_DAYS * 24 * 60 * 60,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )


async def get_optional_external_session(
    response: Response,
    external_portal_session: Optional[str] = Cookie(None),
    db: Prisma = Depends(get_db),
) -> Optional[ExternalPortalSession]:
    """
    Resolve the portal session cookie. An invalid cookie is cleared.
    """
    if not external_portal_session:
        return None
    session = await ExternalPortalAuthService(db).find_session(external_portal_session)
    if session is None:
        clear_session_cookie(response)
    return session


async def get_external_session(
    session: Optional[ExternalPortalSession] = Depends(get_optional_external_session),
) -> ExternalPortalSession:
    if session is None:
        raise SessionRequiredError()
    return session
