"""Async PostgREST client bound to a single credential."""

import json
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession

from .exceptions import (
    APIError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServerError,
    ValidationError,
)
from .tokens import fingerprint

# PostgREST codes for a missing, invalid or expired JWT
JWT_ERROR_CODES = frozenset({"PGRST301", "PGRST302", "PGRST303"})
UNIQUE_VIOLATION = "23505"
INSUFFICIENT_PRIVILEGE = "42501"


class AsyncApiClient:
    """Backend handle that sends one fixed credential on every request.

    A handle is either anonymous (the anon key is sent as bearer) or bound to
    one user token at construction. The bound token never changes; a new
    token means a new handle.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        token: Optional[str] = None,
        timeout: int = 30,
        session_provider: Optional[Callable[[], Awaitable[ClientSession]]] = None,
    ) -> None:
        """Initialize the backend handle.

        Args:
            base_url: PostgREST base URL, e.g. `https://xyz.supabase.co/rest/v1`
            api_key: Project anon key sent as `apikey`
            token: User bearer token, or None for the anonymous handle
            timeout: Request timeout in seconds
            session_provider: Coroutine returning a shared aiohttp session; when
                omitted the handle owns its own session
        """
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session_provider = session_provider
        self._session: Optional[ClientSession] = None

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_anonymous(self) -> bool:
        return self._token is None

    def __repr__(self) -> str:
        bound = "anonymous" if self.is_anonymous else fingerprint(self._token)
        return f"<AsyncApiClient {bound}>"

    async def _get_session(self) -> ClientSession:
        """Get the shared session, or create this handle's own one."""
        if self._session_provider is not None:
            return await self._session_provider()
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=self.timeout)
        return self._session

    def _get_version(self) -> str:
        try:
            from . import __version__
            return __version__
        except (ImportError, AttributeError):
            return "0.1.0"

    def _get_headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        bearer = self._token if self._token else self._api_key
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"identity-bridge-python/{self._get_version()}",
            "apikey": self._api_key,
            "Authorization": f"Bearer {bearer}",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _build_url(self, endpoint: str) -> str:
        return urljoin(self.base_url + "/", endpoint.lstrip("/"))

    @staticmethod
    def _build_filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        return {column: f"eq.{value}" for column, value in (filters or {}).items()}

    def _handle_response(
        self,
        response_data: Any,
        status_code: int,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """Return the payload of a 2xx response, raise the matching exception otherwise."""
        if 200 <= status_code < 300:
            return response_data

        data = response_data if isinstance(response_data, dict) else {}
        error_message = data.get("message") or data.get("msg") or "Unknown error"
        if isinstance(error_message, dict):
            error_message = str(error_message)
        code = str(data.get("code", ""))

        if status_code == 401 or code in JWT_ERROR_CODES:
            raise AuthenticationError(error_message, status_code, data)
        if status_code == 403 or code == INSUFFICIENT_PRIVILEGE:
            raise PermissionDeniedError(error_message, status_code, data)
        if status_code == 409 or code == UNIQUE_VIOLATION:
            raise ConflictError(error_message, status_code, data)
        if status_code == 400:
            raise ValidationError(error_message, status_code, data)
        if status_code == 404:
            raise NotFoundError(error_message, status_code, data)
        if status_code == 429:
            retry_after = None
            if headers and headers.get("Retry-After", "").isdigit():
                retry_after = int(headers["Retry-After"])
            raise RateLimitError(error_message, status_code, retry_after, data)
        if 500 <= status_code < 600:
            raise ServerError(error_message, status_code, data)
        raise APIError(error_message, status_code, data)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        """Make an async request and return the decoded JSON payload."""
        session = await self._get_session()
        url = self._build_url(endpoint)
        headers = self._get_headers(prefer)

        async with session.request(
            method,
            url,
            params=params,
            json=json_data,
            headers=headers,
            timeout=self.timeout,
        ) as response:
            text = await response.text()
            try:
                response_data = json.loads(text) if text else None
            except json.JSONDecodeError:
                response_data = {"raw_content": text}

            return self._handle_response(response_data, response.status, response.headers)

    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        columns: str = "*",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Read rows matching all equality filters."""
        params: Dict[str, Any] = {"select": columns, **self._build_filters(filters)}
        if limit is not None:
            params["limit"] = str(limit)
        return await self.request("GET", f"/{table}", params=params) or []

    async def insert(self, table: str, row: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.request(
            "POST", f"/{table}", json_data=row, prefer="return=representation"
        ) or []

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        """Update rows matching all equality filters and return them."""
        if not filters:
            raise ValueError("Refusing to update without filters")
        return await self.request(
            "PATCH",
            f"/{table}",
            params=self._build_filters(filters),
            json_data=values,
            prefer="return=representation",
        ) or []

    async def delete(self, table: str, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        return await self.request(
            "DELETE",
            f"/{table}",
            params=self._build_filters(filters),
            prefer="return=representation",
        ) or []

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a Postgres function exposed by PostgREST."""
        return await self.request("POST", f"/rpc/{function}", json_data=params or {})

    async def close(self) -> None:
        """Close the session if this handle owns it."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "AsyncApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
