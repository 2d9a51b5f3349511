"""Bridge between an external identity provider and a row-level-security backend."""

__version__ = "0.1.0"

from .async_api_client import AsyncApiClient
from .async_auth_manager import GLOBAL_SYNC_GUARD, AsyncAuthManager, SyncGuard
from .auth_config import BridgeConfiguration
from .client_factory import AuthClientFactory
from .exceptions import (
    APIError,
    AuthenticationError,
    BridgeError,
    ConflictError,
    MalformedTokenError,
    MissingProfileError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServerError,
    ValidationError,
    WriteNotAuthorizedError,
)
from .identity_provider import IdentityProvider
from .models import ProviderSession, SessionPhase, SessionState, TokenClaims, UserRecord
from .token_acquirer import AcquireResult, TokenAcquirer
from .token_cache import CacheEntry, FileTokenStore, MemoryTokenStore, TokenCache, TokenStore
from .tokens import decode_claims, describe_token, fingerprint, is_usable
from .users import UserSynchronizer

__all__ = [
    "__version__",
    "APIError",
    "AcquireResult",
    "AsyncApiClient",
    "AsyncAuthManager",
    "AuthClientFactory",
    "AuthenticationError",
    "BridgeConfiguration",
    "BridgeError",
    "CacheEntry",
    "ConflictError",
    "FileTokenStore",
    "GLOBAL_SYNC_GUARD",
    "IdentityProvider",
    "MalformedTokenError",
    "MemoryTokenStore",
    "MissingProfileError",
    "NotFoundError",
    "PermissionDeniedError",
    "ProviderSession",
    "RateLimitError",
    "ServerError",
    "SessionPhase",
    "SessionState",
    "SyncGuard",
    "TokenAcquirer",
    "TokenCache",
    "TokenClaims",
    "TokenStore",
    "UserRecord",
    "UserSynchronizer",
    "ValidationError",
    "WriteNotAuthorizedError",
    "decode_claims",
    "describe_token",
    "fingerprint",
    "is_usable",
]
