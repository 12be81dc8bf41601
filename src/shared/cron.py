# src/shared/cron.py
import hmac
import logging

from fastapi import Header

from src.core.settings import settings
from src.shared.exceptions import InvalidTokenError

logger = logging.getLogger(__name__)


def _presents_secret(
    authorization: str | None, cron_secret_header: str | None, secret: str
) -> bool:
    if authorization and authorization.startswith("Bearer "):
        presented = authorization[len("Bearer ") :]
        if hmac.compare_digest(presented, secret):
            return True
    return bool(cron_secret_header) and hmac.compare_digest(cron_secret_header, secret)


def is_cron_request_authorized(
    authorization: str | None,
    cron_secret_header: str | None,
    scheduler_header: str | None,
) -> bool:
    """
    Decide whether a scheduler call may run.

    Development allows everything. With a configured CRON_SECRET the caller must
    present it as a bearer token or in the legacy ``x-cron-secret`` header.
    Without a secret, only scheduler-originated requests are accepted.
    """
    if not settings.is_production:
        return True

    secret = settings.CRON_SECRET
    if secret:
        return _presents_secret(authorization, cron_secret_header, secret)

    return scheduler_header == "1"


def is_internal_request_authorized(
    authorization: str | None, cron_secret_header: str | None
) -> bool:
    """
    Decide whether an app-server call to a management endpoint may run.

    Production requires the configured CRON_SECRET; with none set every call
    is rejected.
    """
    if not settings.is_production:
        return True

    secret = settings.CRON_SECRET
    if not secret:
        return False
    return _presents_secret(authorization, cron_secret_header, secret)


def require_cron_secret(
    authorization: str | None = Header(None),
    x_cron_secret: str | None = Header(None),
    x_vercel_cron: str | None = Header(None),
) -> None:
    """FastAPI dependency guarding scheduler endpoints."""
    if not is_cron_request_authorized(authorization, x_cron_secret, x_vercel_cron):
        logger.warning("Rejected unauthorized cron request")
        raise InvalidTokenError()


def require_internal_secret(
    authorization: str | None = Header(None),
    x_cron_secret: str | None = Header(None),
) -> None:
    """FastAPI dependency guarding management endpoints called by the app server."""
    if not is_internal_request_authorized(authorization, x_cron_secret):
        if not settings.CRON_SECRET:
            logger.error("CRON_SECRET is not set; rejecting internal request")
        else:
            logger.warning("Rejected unauthorized internal request")
        raise InvalidTokenError()
