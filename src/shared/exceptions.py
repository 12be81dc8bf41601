# src/shared/exceptions.py
from fastapi import HTTPException, status


class BaseHTTPException(HTTPException):
    """HTTP exception with class-level status code and default message."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(status_code=self.status_code, detail=message or self.message)
        self.message = message or self.message


class ConfigurationError(Exception):
    """A required secret or key is missing or malformed. Always fatal."""


# Authentication Exceptions
class InvalidTokenError(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid token"
        )


# Integration Exceptions
class IntegrationNotFoundError(HTTPException):
    def __init__(self, message: str = "No active integration connection") -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=message)


class IntegrationConnectionError(HTTPException):
    def __init__(self, message: str = "Integration connection failed") -> None:
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message
        )


class IntegrationAuthenticationError(HTTPException):
    def __init__(self, message: str = "Integration authentication failed") -> None:
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)


class IntegrationTokenExpiredError(HTTPException):
    def __init__(self, message: str = "Integration token has expired") -> None:
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)
