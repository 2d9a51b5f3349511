from .claims import TokenClaims
from .session import ProviderSession, SessionPhase, SessionState
from .user import UserRecord

__all__ = [
    "ProviderSession",
    "SessionPhase",
    "SessionState",
    "TokenClaims",
    "UserRecord",
]
