"""Async auth session orchestration between the identity provider and the backend."""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from .async_api_client import AsyncApiClient
from .auth_config import BridgeConfiguration
from .client_factory import AuthClientFactory
from .exceptions import (
    BACKEND_ERRORS,
    AuthenticationError,
    BridgeError,
    MissingProfileError,
    WriteNotAuthorizedError,
)
from .identity_provider import IdentityProvider
from .models.session import ProviderSession, SessionPhase, SessionState
from .models.user import UserRecord
from .token_acquirer import TokenAcquirer
from .token_cache import FileTokenStore, TokenCache
from .users import UserSynchronizer

logger = logging.getLogger(__name__)

T = TypeVar("T")
StateListener = Callable[[SessionState], None]


class SyncGuard:
    """Flag allowing at most one sync cycle at a time.

    Acquisition never waits: a caller that finds the guard held is expected to
    drop its request.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


# Shared by every manager in the process unless a test injects its own.
GLOBAL_SYNC_GUARD = SyncGuard()


class _Probe(Enum):
    VERIFIED = "verified"
    UNAUTHORIZED = "unauthorized"
    FAILED = "failed"


class AsyncAuthManager:
    """Keeps the backend session in step with the identity provider.

    Every trigger (session change, `refresh()`, background timer) runs one
    sync cycle: acquire a token, build a client for it, synchronize the user
    record and verify the token against the backend, then publish a new
    `SessionState`. Writes are allowed only when both the token is verified
    and the user record is synchronized.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        config: BridgeConfiguration,
        token_cache: Optional[TokenCache] = None,
        client_factory: Optional[AuthClientFactory] = None,
        token_acquirer: Optional[TokenAcquirer] = None,
        user_synchronizer: Optional[UserSynchronizer] = None,
        sync_guard: Optional[SyncGuard] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the auth manager.

        Args:
            identity_provider: Source of sessions and tokens
            config: Bridge configuration
            token_cache: Token cache; built from `config` when omitted
            client_factory: Backend client factory; built from `config` when omitted
            token_acquirer: Token acquirer; built around `token_cache` when omitted
            user_synchronizer: User synchronizer; built around `client_factory` when omitted
            sync_guard: Concurrency guard; the process-wide guard when omitted
            clock: Monotonic clock used for sync throttling
            sleep: Awaitable delay used by the background refresher
        """
        super().__init__()

        self.config = config
        self._provider = identity_provider

        if token_cache is None:
            store = FileTokenStore(config.token_store_path) if config.token_store_path else None
            token_cache = TokenCache(config.safety_margin_seconds, store=store)
        self.token_cache = token_cache
        self.client_factory = client_factory or AuthClientFactory(config)
        self.token_acquirer = token_acquirer or TokenAcquirer(
            identity_provider,
            self.token_cache,
            template=config.token_template,
            max_attempts=config.max_token_attempts,
            backoff_seconds=config.retry_backoff_seconds,
        )
        self.user_synchronizer = user_synchronizer or UserSynchronizer(
            self.client_factory,
            users_table=config.users_table,
            sync_rpc=config.sync_rpc,
        )

        self._guard = sync_guard or GLOBAL_SYNC_GUARD
        self._clock = clock
        self._sleep = sleep

        self._state = SessionState()
        self._listeners: List[StateListener] = []
        self._initialized = False
        self._last_sync = 0.0
        self._synced_subject: Optional[str] = None
        self._missing_profile_reported: Optional[str] = None
        self._refresh_task: Optional["asyncio.Task[None]"] = None

    # state accessors

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def user(self) -> Optional[UserRecord]:
        return self._state.user

    @property
    def can_vote(self) -> bool:
        return self._state.can_vote

    @property
    def token_verified(self) -> bool:
        return self._state.token_verified

    @property
    def error(self) -> Optional[Exception]:
        return self._state.error

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a callback for every published state; returns an unsubscribe function."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _publish(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error("Error executing state listener: %s", e)

    # triggers

    async def on_session_change(self) -> bool:
        """Handle a session change reported by the identity provider.

        A change of signed-in subject (including sign-in and sign-out) forces
        a fresh token; otherwise the trigger is subject to throttling.
        """
        session = await self._provider.current_session()
        subject = session.subject_id if session and session.signed_in else None
        force = not self._initialized or subject != self._synced_subject
        return await self.sync(force=force)

    async def refresh(self) -> None:
        """Force a full resync with a freshly issued token."""
        await self.sync(force=True)

    async def sync(self, force: bool = False) -> bool:
        """Run one sync cycle.

        Returns:
            False if the trigger was throttled or dropped because another
            sync is in flight, True if a cycle ran
        """
        if (
            not force
            and self._initialized
            and self._clock() - self._last_sync < self.config.min_sync_interval_seconds
        ):
            logger.debug("Throttling sync attempt, last sync was too recent")
            return False
        return await self._guarded_cycle(force_token=force, refresh_on_unauthorized=True)

    async def _guarded_cycle(self, force_token: bool, refresh_on_unauthorized: bool) -> bool:
        if not self._guard.try_acquire():
            logger.debug("Sync already in progress, skipping")
            return False
        try:
            self._publish(phase=SessionPhase.SYNCING, is_loading=True)
            await self._run_cycle(force_token, refresh_on_unauthorized)
        except Exception as e:
            logger.exception("Unexpected error in auth sync")
            self._publish(phase=SessionPhase.DEGRADED, is_loading=False, token_verified=False, error=e)
        finally:
            self._last_sync = self._clock()
            self._initialized = True
            self._guard.release()
            if self._state.is_loading:
                self._publish(is_loading=False)
        return True

    # cycle

    async def _run_cycle(self, force_token: bool, refresh_on_unauthorized: bool) -> None:
        session = await self._provider.current_session()
        if session is None or not session.signed_in or not session.subject_id:
            self._enter_signed_out()
            return

        self._publish(provider_session=session)

        if not session.email:
            if self._missing_profile_reported != session.subject_id:
                logger.error("No primary email on provider profile %s..., skipping user sync", session.subject_id[:8])
                self._missing_profile_reported = session.subject_id
            self._synced_subject = session.subject_id
            self._enter_degraded(session, None, MissingProfileError("No primary email found for user"))
            return

        token = await self.token_acquirer.acquire(force_refresh=force_token)
        if token is None:
            user = await self._sync_user(session, None)
            self._synced_subject = session.subject_id
            self._enter_degraded(session, user, BridgeError("Could not obtain a bearer token"))
            self._start_refresh_timer()
            return

        client = self.client_factory.client_for(token)
        user, (probe, probe_error) = await asyncio.gather(
            self._sync_user(session, token),
            self._verify(client),
        )

        if probe is _Probe.UNAUTHORIZED and refresh_on_unauthorized:
            logger.warning("Token rejected by backend, forcing one token refresh")
            token = await self.token_acquirer.acquire(force_refresh=True)
            if token is None:
                probe, probe_error = _Probe.FAILED, BridgeError("Could not obtain a bearer token")
            else:
                probe, probe_error = await self._verify(self.client_factory.client_for(token))
                if probe is _Probe.VERIFIED and user is None:
                    user = await self._sync_user(session, token)

        self._synced_subject = session.subject_id
        self._start_refresh_timer()

        if probe is _Probe.VERIFIED and user is not None:
            self._publish(
                phase=SessionPhase.AUTHENTICATED,
                is_loading=False,
                user=user,
                token_verified=True,
                error=None,
            )
            logger.info("Auth session verified for user %s...", user.id[:8])
            return

        if probe is _Probe.VERIFIED:
            probe_error = BridgeError("User record could not be synchronized")
        self._enter_degraded(session, user, probe_error)

    async def _sync_user(self, session: ProviderSession, token: Optional[str]) -> Optional[UserRecord]:
        return await self.user_synchronizer.sync(
            session.subject_id,
            session.email,
            session.full_name,
            session.avatar_url,
            token=token,
        )

    async def _verify(self, client: AsyncApiClient) -> Tuple[_Probe, Optional[Exception]]:
        """Issue one cheap authenticated request with the client."""
        if client.is_anonymous:
            return _Probe.FAILED, BridgeError("No usable token to verify")
        try:
            result = await client.rpc(self.config.verification_rpc)
        except AuthenticationError as e:
            logger.warning("Token verification rejected: %s", e)
            return _Probe.UNAUTHORIZED, e
        except BACKEND_ERRORS as e:
            logger.warning("Token verification failed: %s", e)
            return _Probe.FAILED, e
        if result is False:
            return _Probe.UNAUTHORIZED, AuthenticationError("Backend did not accept the token as authenticated")
        return _Probe.VERIFIED, None

    def _enter_signed_out(self) -> None:
        logger.info("User not signed in, clearing auth state")
        self.token_cache.clear()
        self.client_factory.clear()
        self._stop_refresh_timer()
        self._synced_subject = None
        self._missing_profile_reported = None
        self._publish(
            phase=SessionPhase.SIGNED_OUT,
            is_loading=False,
            user=None,
            provider_session=None,
            token_verified=False,
            error=None,
        )

    def _enter_degraded(
        self,
        session: ProviderSession,
        user: Optional[UserRecord],
        error: Optional[Exception],
    ) -> None:
        if user is None and self._state.user is not None and self._state.user.id == session.subject_id:
            user = self._state.user
        self._publish(
            phase=SessionPhase.DEGRADED,
            is_loading=False,
            user=user,
            token_verified=False,
            error=error,
        )

    # clients and writes

    def get_client(self) -> AsyncApiClient:
        """Client for the current token, or the anonymous client if it has expired."""
        token = self.token_cache.get() if self.token_cache.is_valid() else None
        return self.client_factory.client_for(token)

    async def run_write(self, operation: Callable[[AsyncApiClient], Awaitable[T]]) -> T:
        """Run an authenticated write, recovering once from an authorization failure.

        Raises:
            WriteNotAuthorizedError: The session is not writable, or the
                backend still rejects it after one forced token refresh.
        """
        if not self.can_vote:
            raise WriteNotAuthorizedError()

        rejection: Optional[Exception] = None
        client = self.get_client()
        if not client.is_anonymous:
            try:
                return await operation(client)
            except AuthenticationError as e:
                logger.warning("Write rejected with authorization error: %s", e)
                rejection = e

        ran = await self._guarded_cycle(force_token=True, refresh_on_unauthorized=False)
        if not ran or not self.can_vote:
            raise WriteNotAuthorizedError() from rejection
        try:
            return await operation(self.get_client())
        except AuthenticationError as e:
            logger.error("Write rejected again after token refresh: %s", e)
            self._publish(phase=SessionPhase.DEGRADED, is_loading=False, token_verified=False, error=e)
            raise WriteNotAuthorizedError() from e

    # background refresh

    def _next_refresh_delay(self) -> float:
        delay = self.config.refresh_interval_seconds
        expires_in = self.token_cache.expires_in()
        if expires_in is not None:
            before_expiry = expires_in - 2 * self.config.safety_margin_seconds
            delay = min(delay, max(before_expiry, self.config.min_sync_interval_seconds))
        return delay

    def _start_refresh_timer(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh_loop())

    def _stop_refresh_timer(self) -> Optional["asyncio.Task[None]"]:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            return task
        return None

    async def _refresh_loop(self) -> None:
        while self._refresh_task is asyncio.current_task():
            await self._sleep(self._next_refresh_delay())
            if self._refresh_task is not asyncio.current_task():
                break
            logger.debug("Background token refresh")
            await self.sync(force=True)

    # lifecycle

    async def start(self) -> "AsyncAuthManager":
        await self.on_session_change()
        return self

    async def close(self) -> None:
        """Stop the background refresher and release backend connections."""
        task = self._stop_refresh_timer()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.client_factory.close()

    async def __aenter__(self) -> "AsyncAuthManager":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
