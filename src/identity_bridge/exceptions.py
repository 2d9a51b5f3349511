"""Exceptions raised by the identity bridge."""

import asyncio
from typing import Any, Dict, Optional

import aiohttp


class BridgeError(Exception):
    """Base class for all identity bridge errors."""


class APIError(BridgeError):
    """Error response returned by the backend data service."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}

    @property
    def code(self) -> Optional[str]:
        """PostgREST / Postgres error code, when the backend sent one."""
        code = self.response_data.get("code")
        return str(code) if code is not None else None

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.message} (status {self.status_code})"
        return self.message


class AuthenticationError(APIError):
    """The presented credential is invalid or expired."""


class PermissionDeniedError(APIError):
    """The credential is valid but row-level security rejected the request."""


class ValidationError(APIError):
    """The request was malformed."""


class NotFoundError(APIError):
    """Table, row or function does not exist."""


class ConflictError(APIError):
    """A uniqueness constraint was violated."""


class RateLimitError(APIError):
    """Too many requests."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, status_code, response_data)
        self.retry_after = retry_after


class ServerError(APIError):
    """The backend failed with a 5xx status."""


class MalformedTokenError(BridgeError):
    """A bearer token does not have a decodable three-segment shape."""


class MissingProfileError(BridgeError):
    """The identity provider profile lacks data required for user sync."""


class WriteNotAuthorizedError(BridgeError):
    """An authenticated write was attempted without a writable session."""

    def __init__(self, message: str = "Not authorized to write, please retry authentication") -> None:
        super().__init__(message)


# Expected failures of a backend round trip. Anything else is a programming error.
BACKEND_ERRORS = (APIError, aiohttp.ClientError, asyncio.TimeoutError)
