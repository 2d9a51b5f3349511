"""Synchronisation of identity provider profiles into the local users table."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .async_api_client import AsyncApiClient
from .client_factory import AuthClientFactory
from .exceptions import BACKEND_ERRORS, ConflictError
from .models.user import UserRecord

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserSynchronizer:
    """Reconciles a provider profile with the backend user record.

    Each step of the chain is tried only if the previous one did not produce
    a record. Expected failures are logged and never raised; `None` means
    every fallback was exhausted.
    """

    def __init__(
        self,
        client_factory: AuthClientFactory,
        users_table: str = "users",
        sync_rpc: Optional[str] = "sync_clerk_user",
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._factory = client_factory
        self._table = users_table
        self._sync_rpc = sync_rpc
        self._now = now

    async def sync(
        self,
        provider_id: str,
        email: str,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Optional[UserRecord]:
        """Create, update or re-key the user record for a provider identity.

        Args:
            provider_id: Subject identifier from the identity provider
            email: Primary email of the provider profile
            full_name: Display name, left untouched when None
            avatar_url: Avatar URL, left untouched when None
            token: Bearer token; the anonymous client is used without one

        Returns:
            The synchronized record, or None if every step failed
        """
        if not provider_id or not email:
            logger.error(
                "Missing required parameters for user sync (id present: %s, email present: %s)",
                bool(provider_id),
                bool(email),
            )
            return None

        client = self._factory.client_for(token)
        logger.debug(
            "Syncing user %s... using %s client",
            provider_id[:8],
            "anonymous" if client.is_anonymous else "authenticated",
        )

        if self._sync_rpc:
            record = await self._sync_via_rpc(client, provider_id, email, full_name, avatar_url)
            if record is not None:
                return record

        changes = self._changes(email, full_name, avatar_url)

        existing = await self._find(client, "id", provider_id)
        if existing is not None:
            record = await self._update(client, {"id": provider_id}, changes)
            if record is not None:
                logger.debug("Updated existing user %s...", provider_id[:8])
                return record
        else:
            by_email = await self._find(client, "email", email)
            if by_email is not None:
                if by_email.id != provider_id:
                    logger.info("Re-keying user record matched by email to provider id %s...", provider_id[:8])
                record = await self._update(client, {"email": email}, {"id": provider_id, **changes})
                if record is not None:
                    return record
            else:
                record = await self._insert(client, provider_id, email, full_name, avatar_url)
                if record is not None:
                    logger.debug("Created user %s...", provider_id[:8])
                    return record

        record = await self._refetch(client, provider_id, email)
        if record is None:
            logger.error("Failed to sync user %s... after all attempts", provider_id[:8])
        return record

    def _changes(
        self,
        email: str,
        full_name: Optional[str],
        avatar_url: Optional[str],
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {"email": email, "updated_at": self._now().isoformat()}
        if full_name is not None:
            changes["full_name"] = full_name
        if avatar_url is not None:
            changes["avatar_url"] = avatar_url
        return changes

    def _first_record(self, rows: Any) -> Optional[UserRecord]:
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            return None
        try:
            return UserRecord(**rows[0])
        except (PydanticValidationError, TypeError) as e:
            logger.warning("Ignoring unparsable user row: %s", e)
            return None

    async def _sync_via_rpc(
        self,
        client: AsyncApiClient,
        provider_id: str,
        email: str,
        full_name: Optional[str],
        avatar_url: Optional[str],
    ) -> Optional[UserRecord]:
        try:
            rows = await client.rpc(
                self._sync_rpc,
                {
                    "p_id": provider_id,
                    "p_email": email,
                    "p_full_name": full_name,
                    "p_avatar_url": avatar_url,
                },
            )
        except BACKEND_ERRORS as e:
            logger.debug("User sync function %s failed, falling back: %s", self._sync_rpc, e)
            return None
        return self._first_record(rows)

    async def _find(self, client: AsyncApiClient, column: str, value: str) -> Optional[UserRecord]:
        try:
            rows = await client.select(self._table, {column: value}, limit=1)
        except BACKEND_ERRORS as e:
            logger.warning("User lookup by %s failed: %s", column, e)
            return None
        return self._first_record(rows)

    async def _update(
        self,
        client: AsyncApiClient,
        filters: Dict[str, Any],
        values: Dict[str, Any],
    ) -> Optional[UserRecord]:
        try:
            rows: List[Dict[str, Any]] = await client.update(self._table, values, filters)
        except BACKEND_ERRORS as e:
            logger.error("Error updating user matched by %s: %s", ", ".join(filters), e)
            return None
        return self._first_record(rows)

    async def _insert(
        self,
        client: AsyncApiClient,
        provider_id: str,
        email: str,
        full_name: Optional[str],
        avatar_url: Optional[str],
    ) -> Optional[UserRecord]:
        now = self._now().isoformat()
        row = {
            "id": provider_id,
            "email": email,
            "full_name": full_name,
            "avatar_url": avatar_url,
            "created_at": now,
            "updated_at": now,
        }
        try:
            rows = await client.insert(self._table, row)
        except ConflictError:
            logger.info("User %s... was created concurrently, re-fetching", provider_id[:8])
            return None
        except BACKEND_ERRORS as e:
            logger.error("Error inserting user: %s", e)
            return None
        return self._first_record(rows)

    async def _refetch(self, client: AsyncApiClient, provider_id: str, email: str) -> Optional[UserRecord]:
        record = await self._find(client, "id", provider_id)
        if record is None:
            record = await self._find(client, "email", email)
        return record
