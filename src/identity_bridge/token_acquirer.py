"""Deduplicated, retrying wrapper around the provider's token endpoint."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .identity_provider import IdentityProvider
from .token_cache import TokenCache
from .tokens import fingerprint, is_well_formed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcquireResult:
    token: Optional[str]
    attempts: int = 0
    reason: Optional[str] = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.token is not None


class TokenAcquirer:
    """Obtains bearer tokens from the identity provider.

    Concurrent callers share a single in-flight request. Failures are retried
    with exponential backoff and, once exhausted, reported as a `None` token
    rather than an exception.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        cache: TokenCache,
        template: str = "supabase",
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the token acquirer.

        Args:
            provider: Identity provider that mints tokens
            cache: Cache the acquired tokens are written through to
            template: JWT template name requested from the provider
            max_attempts: Attempts per acquisition before giving up
            backoff_seconds: Delay after the first failure, doubled on each retry
            sleep: Awaitable delay function
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._provider = provider
        self._cache = cache
        self._template = template
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._in_flight: Optional["asyncio.Future[AcquireResult]"] = None

    @property
    def cache(self) -> TokenCache:
        return self._cache

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    async def acquire(self, force_refresh: bool = False) -> Optional[str]:
        """Return a usable token, or None if none could be obtained."""
        result = await self.acquire_result(force_refresh)
        return result.token

    async def acquire_result(self, force_refresh: bool = False) -> AcquireResult:
        if not force_refresh and self._cache.is_valid():
            return AcquireResult(token=self._cache.get(), from_cache=True)

        if self._in_flight is None or self._in_flight.done():
            future = asyncio.ensure_future(self._acquire_with_retry())
            future.add_done_callback(self._forget_in_flight)
            self._in_flight = future
        else:
            logger.debug("Joining in-flight token request")

        return await asyncio.shield(self._in_flight)

    def _forget_in_flight(self, future: "asyncio.Future[AcquireResult]") -> None:
        if self._in_flight is future:
            self._in_flight = None

    async def _acquire_with_retry(self) -> AcquireResult:
        reason = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                token = await self._provider.issue_token(self._template)
            except Exception as e:  # provider failures of any kind are retried
                logger.warning(
                    "Token request failed (attempt %d/%d): %s", attempt, self._max_attempts, e
                )
                reason = "error"
            else:
                if token is None:
                    logger.warning(
                        "No token returned by provider (attempt %d/%d)", attempt, self._max_attempts
                    )
                    reason = "no_token"
                elif not is_well_formed(token):
                    logger.warning(
                        "Malformed token returned by provider (attempt %d/%d)",
                        attempt,
                        self._max_attempts,
                    )
                    reason = "malformed"
                elif not self._cache.accepts(token):
                    logger.warning(
                        "Provider returned a token expiring within the safety margin (attempt %d/%d)",
                        attempt,
                        self._max_attempts,
                    )
                    reason = "expired"
                else:
                    self._cache.set(token)
                    logger.debug("Acquired token %s", fingerprint(token))
                    return AcquireResult(token=token, attempts=attempt)

            if attempt < self._max_attempts:
                await self._sleep(self._backoff_seconds * 2 ** (attempt - 1))

        logger.error("Giving up on token acquisition after %d attempts", self._max_attempts)
        self._cache.clear()
        return AcquireResult(token=None, attempts=self._max_attempts, reason=reason)
