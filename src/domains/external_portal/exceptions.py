"""
Domain-specific exceptions for external portal authentication.

Messages are deliberately generic so the login path does not reveal whether
an email has an account.
"""

from src.shared.exceptions import BaseHTTPException


class ExternalPortalAuthError(BaseHTTPException):
    """Base exception for external portal authentication failures."""

    status_code = 401
    message = "Unable to authenticate"


class InvalidAccessLinkError(ExternalPortalAuthError):
    status_code = 404
    message = "This access link is invalid or no longer active"


class InvalidCredentialsError(ExternalPortalAuthError):
    message = "Invalid email or password"


class IncorrectClaimPasswordError(ExternalPortalAuthError):
    message = "Incorrect password for this email"


class AccountInactiveError(ExternalPortalAuthError):
    status_code = 403
    message = "This account is paused or revoked. Contact the builder."


class SessionRequiredError(ExternalPortalAuthError):
    message = "No active portal session"


class AccountNotFoundError(ExternalPortalAuthError):
    status_code = 404
    message = "External portal account not found"


class PinNotConfiguredError(ExternalPortalAuthError):
    status_code = 404
    message = "PIN is not enabled for this link"
