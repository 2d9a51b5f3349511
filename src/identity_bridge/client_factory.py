"""Factory for backend handles bound to bearer tokens."""

import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional

from aiohttp import ClientSession, ClientTimeout

from .async_api_client import AsyncApiClient
from .auth_config import BridgeConfiguration
from .tokens import fingerprint, is_usable

logger = logging.getLogger(__name__)


class _ThrottledLog:
    """Emits a given debug message at most once per interval."""

    def __init__(self, interval: float = 5.0, max_keys: int = 20, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = interval
        self._max_keys = max_keys
        self._clock = clock
        self._last: Dict[str, float] = {}

    def debug(self, key: str, message: str, *args) -> None:
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self._interval:
            return
        logger.debug(message, *args)
        self._last[key] = now
        if len(self._last) > self._max_keys:
            oldest = min(self._last, key=self._last.get)
            del self._last[oldest]


class AuthClientFactory:
    """Creates and caches backend handles, one per token.

    Handles are keyed by token fingerprint and evicted oldest-first once the
    bound is exceeded. The anonymous handle is created once and never evicted.
    All handles share one lazily created aiohttp session.
    """

    def __init__(
        self,
        config: BridgeConfiguration,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the client factory.

        Args:
            config: Bridge configuration (backend URL, anon key, cache bound)
            clock: Source of the current epoch time, used for expiry checks
        """
        self._config = config
        self._clock = clock
        self._max_clients = config.max_cached_clients
        self._clients: "OrderedDict[str, AsyncApiClient]" = OrderedDict()
        self._session: Optional[ClientSession] = None
        self._throttled = _ThrottledLog()
        self._anonymous = AsyncApiClient(
            base_url=config.rest_url,
            api_key=config.supabase_anon_key,
            timeout=config.request_timeout,
            session_provider=self._get_session,
        )

    @property
    def anonymous(self) -> AsyncApiClient:
        return self._anonymous

    @property
    def cached_count(self) -> int:
        return len(self._clients)

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=ClientTimeout(total=self._config.request_timeout)
            )
        return self._session

    def client_for(self, token: Optional[str]) -> AsyncApiClient:
        """Return the handle for a token, or the anonymous handle if it is unusable."""
        if not token:
            self._throttled.debug("anon-no-token", "Using anonymous client (no token)")
            return self._anonymous
        if not is_usable(token, self._config.safety_margin_seconds, self._clock()):
            self._throttled.debug("anon-expired", "Using anonymous client (token unusable)")
            return self._anonymous

        key = fingerprint(token)
        client = self._clients.get(key)
        if client is not None and client.token == token:
            return client

        logger.debug("Creating authenticated client for token %s", key)
        client = AsyncApiClient(
            base_url=self._config.rest_url,
            api_key=self._config.supabase_anon_key,
            token=token,
            timeout=self._config.request_timeout,
            session_provider=self._get_session,
        )
        self._store(key, client)
        return client

    def _store(self, key: str, client: AsyncApiClient) -> None:
        self._clients.pop(key, None)
        self._clients[key] = client
        while len(self._clients) > self._max_clients:
            evicted, _ = self._clients.popitem(last=False)
            logger.debug("Evicted authenticated client %s", evicted)

    def clear(self) -> None:
        """Drop every token-bound handle; the anonymous handle survives."""
        self._clients.clear()

    async def close(self) -> None:
        self.clear()
        if self._session and not self._session.closed:
            await self._session.close()
