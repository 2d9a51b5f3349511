"""Process-wide bearer token cache with optional persistence."""

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

from .exceptions import MalformedTokenError
from .tokens import decode_claims, fingerprint, is_usable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    token: str
    fetched_at: float
    expires_at: float


class TokenStore(Protocol):
    """Persistent slot for a single token and its absolute expiry."""

    def load(self) -> Optional[Tuple[str, float]]:
        """Return the persisted (token, expires_at) pair, if any."""

    def save(self, token: str, expires_at: float) -> None:
        """Persist a token together with its absolute expiry."""

    def clear(self) -> None:
        """Remove any persisted token."""


class MemoryTokenStore:
    """Token store that lives as long as the object does."""

    def __init__(self) -> None:
        self._value: Optional[Tuple[str, float]] = None

    def load(self) -> Optional[Tuple[str, float]]:
        return self._value

    def save(self, token: str, expires_at: float) -> None:
        self._value = (token, expires_at)

    def clear(self) -> None:
        self._value = None


class FileTokenStore:
    """Token store backed by a small JSON file."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> Optional[Tuple[str, float]]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            return str(data["token"]), float(data["expires_at"])
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable token store %s: %s", self.path, e)
            return None

    def save(self, token: str, expires_at: float) -> None:
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump({"token": token, "expires_at": expires_at}, fh)
            os.replace(tmp_path, self.path)
        except Exception:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


class TokenCache:
    """Single-slot cache for the most recently acquired token.

    The token and its timestamps are always replaced together. Reads never
    perform I/O; the optional store is written on every change and read once,
    at construction.
    """

    def __init__(
        self,
        safety_margin: float = 30,
        store: Optional[TokenStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the token cache.

        Args:
            safety_margin: Seconds before expiry at which a token stops being valid
            store: Optional persistent store used to survive restarts
            clock: Source of the current epoch time in seconds
        """
        self.safety_margin = safety_margin
        self._store = store
        self._clock = clock
        self._entry: Optional[CacheEntry] = None

        if store is not None:
            self._restore()

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    def get(self) -> Optional[str]:
        """Return the cached token without checking freshness."""
        entry = self._entry
        return entry.token if entry else None

    def is_valid(self) -> bool:
        entry = self._entry
        if entry is None:
            return False
        return self._clock() < entry.expires_at - self.safety_margin

    def accepts(self, token: Optional[str]) -> bool:
        """True iff `token` would be valid right after being stored."""
        return is_usable(token, self.safety_margin, now=self._clock())

    def expires_in(self) -> Optional[float]:
        """Seconds until the cached token expires, ignoring the safety margin."""
        entry = self._entry
        if entry is None:
            return None
        return entry.expires_at - self._clock()

    def set(self, token: Optional[str]) -> None:
        """Replace the cached token; `None` clears the slot.

        Raises:
            MalformedTokenError: The token cannot be decoded.
        """
        if token is None:
            self._entry = None
            self._persist_clear()
            return

        claims = decode_claims(token)
        self._entry = CacheEntry(
            token=token,
            fetched_at=self._clock(),
            expires_at=float(claims.exp),
        )
        self._persist(token, float(claims.exp))

    def clear(self) -> None:
        self.set(None)

    def _restore(self) -> None:
        loaded = self._store.load()
        if loaded is None:
            return
        token, expires_at = loaded
        try:
            claims = decode_claims(token)
        except MalformedTokenError:
            logger.info("Discarding malformed persisted token")
            self._persist_clear()
            return

        # the expiry claim wins over whatever was stored next to it
        expires_at = min(expires_at, float(claims.exp))
        if self._clock() >= expires_at - self.safety_margin:
            logger.info("Discarding expired persisted token %s", fingerprint(token))
            self._persist_clear()
            return

        self._entry = CacheEntry(token=token, fetched_at=self._clock(), expires_at=expires_at)
        logger.debug("Restored persisted token %s", fingerprint(token))

    def _persist(self, token: str, expires_at: float) -> None:
        if self._store is None:
            return
        try:
            self._store.save(token, expires_at)
        except OSError as e:
            logger.warning("Could not persist token: %s", e)

    def _persist_clear(self) -> None:
        if self._store is None:
            return
        try:
            self._store.clear()
        except OSError as e:
            logger.warning("Could not clear persisted token: %s", e)
