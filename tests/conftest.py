"""Shared fakes for the identity bridge tests.

No test talks to a real identity provider or backend: tokens are signed
locally and the users table lives in memory.
"""

import asyncio
import itertools
import time
from typing import Any, Callable, Dict, List, Optional, Set

import jwt
import pytest

from identity_bridge import AuthenticationError, ConflictError, NotFoundError
from identity_bridge.async_auth_manager import SyncGuard
from identity_bridge.auth_config import BridgeConfiguration
from identity_bridge.models import ProviderSession

_JTI = itertools.count(1)


def _make_token(
    sub: str = "user_1",
    expires_in: float = 3600,
    now: Optional[float] = None,
    **claims: Any,
) -> str:
    now = time.time() if now is None else now
    payload = {
        "sub": sub,
        "aud": "authenticated",
        "role": "authenticated",
        "exp": int(now + expires_in),
        "jti": str(next(_JTI)),
    }
    payload.update(claims)
    return jwt.encode(payload, "test-secret", algorithm="HS256")


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Identity provider with a settable session and counted token requests."""

    def __init__(self, session: Optional[ProviderSession] = None) -> None:
        self.session = session
        self.issue_calls = 0
        self.templates: List[str] = []
        self.next_token: Callable[[], Optional[str]] = lambda: _make_token(
            sub=self.session.subject_id if self.session else "user_1"
        )

    async def current_session(self) -> Optional[ProviderSession]:
        return self.session

    async def issue_token(self, template: str) -> Optional[str]:
        self.issue_calls += 1
        self.templates.append(template)
        await asyncio.sleep(0)
        return self.next_token()


class InMemoryBackend:
    """Stand-in for PostgREST with a unique `id` and `email` users table."""

    def __init__(self) -> None:
        self.users: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.rejected_tokens: Set[str] = set()
        self.reject_all_tokens = False
        self.rpc_handlers: Dict[str, Callable[..., Any]] = {}
        self.race_row: Optional[Dict[str, Any]] = None
        self.probe_delay = 0

    def client(self, token: Optional[str] = None) -> "FakeClient":
        return FakeClient(self, token)

    def count(self, call: str) -> int:
        return self.calls.count(call)

    def _check(self, name: str, token: Optional[str]) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]
        if token and (self.reject_all_tokens or token in self.rejected_tokens):
            raise AuthenticationError("JWT expired", 401, {"code": "PGRST301"})

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(row.get(k) == v for k, v in filters.items())

    def _unique_violation(self, row: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> bool:
        for other in self.users:
            if other is ignore:
                continue
            if other["id"] == row.get("id") or other["email"] == row.get("email"):
                return True
        return False


class FakeClient:
    """Backend handle over an `InMemoryBackend`."""

    def __init__(self, backend: InMemoryBackend, token: Optional[str]) -> None:
        self._backend = backend
        self._token = token

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_anonymous(self) -> bool:
        return self._token is None

    async def select(self, table, filters=None, columns="*", limit=None):
        await asyncio.sleep(0)
        self._backend._check("select", self._token)
        rows = [dict(r) for r in self._backend.users if self._backend._matches(r, filters or {})]
        return rows[:limit] if limit is not None else rows

    async def insert(self, table, row):
        await asyncio.sleep(0)
        self._backend._check("insert", self._token)
        if self._backend.race_row is not None:
            self._backend.users.append(self._backend.race_row)
            self._backend.race_row = None
        if self._backend._unique_violation(row):
            raise ConflictError("duplicate key value", 409, {"code": "23505"})
        self._backend.users.append(dict(row))
        return [dict(row)]

    async def update(self, table, values, filters):
        await asyncio.sleep(0)
        self._backend._check("update", self._token)
        updated = []
        for row in self._backend.users:
            if self._backend._matches(row, filters):
                candidate = {**row, **values}
                if self._backend._unique_violation(candidate, ignore=row):
                    raise ConflictError("duplicate key value", 409, {"code": "23505"})
                row.update(values)
                updated.append(dict(row))
        return updated

    async def rpc(self, function, params=None):
        if function == "is_clerk_authenticated":
            for _ in range(self._backend.probe_delay + 1):
                await asyncio.sleep(0)
        else:
            await asyncio.sleep(0)
        self._backend._check(f"rpc:{function}", self._token)
        handler = self._backend.rpc_handlers.get(function)
        if handler is not None:
            return handler(**(params or {}))
        if function == "is_clerk_authenticated":
            return self._token is not None
        raise NotFoundError(f"Could not find the function public.{function}", 404, {"code": "PGRST202"})


class FakeFactory:
    """Client factory over an `InMemoryBackend` that reuses one handle per token."""

    def __init__(self, backend: InMemoryBackend) -> None:
        self._backend = backend
        self.anonymous = backend.client(None)
        self._clients: Dict[str, FakeClient] = {}
        self.cleared = 0
        self.closed = False

    def client_for(self, token: Optional[str]) -> FakeClient:
        if not token:
            return self.anonymous
        if token not in self._clients:
            self._clients[token] = self._backend.client(token)
        return self._clients[token]

    def clear(self) -> None:
        self.cleared += 1
        self._clients.clear()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_token():
    return _make_token


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    return BridgeConfiguration(
        supabase_url="https://project.supabase.co",
        supabase_anon_key="anon-key",
        retry_backoff_seconds=0,
    )


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def factory(backend):
    return FakeFactory(backend)


@pytest.fixture
def signed_in_session():
    return ProviderSession(
        signed_in=True,
        subject_id="u1",
        email="a@b.com",
        full_name="Ada Lovelace",
        avatar_url="https://img.example/ada.png",
    )


@pytest.fixture
def provider(signed_in_session):
    return FakeProvider(signed_in_session)


@pytest.fixture
def sync_guard():
    return SyncGuard()
