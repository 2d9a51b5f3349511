from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field

from .user import UserRecord


class SessionPhase(str, Enum):
    SIGNED_OUT = "signed_out"
    SYNCING = "syncing"
    AUTHENTICATED = "authenticated"
    DEGRADED = "degraded"


class ProviderSession(BaseModel):
    """Session as reported by the identity provider."""

    model_config = {"populate_by_name": True, "frozen": True}

    signed_in: bool = Field(..., validation_alias=AliasChoices("signed_in", "signedIn"))
    subject_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("subject_id", "subjectId")
    )
    email: Optional[str] = Field(None)
    full_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("full_name", "fullName")
    )
    avatar_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("avatar_url", "avatarUrl")
    )


class SessionState(BaseModel):
    """Consolidated auth state published to the rest of the application.

    `can_vote` is derived: a verified token and a synchronized user record
    must both be present.
    """

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    phase: SessionPhase = SessionPhase.SIGNED_OUT
    is_loading: bool = True
    user: Optional[UserRecord] = None
    provider_session: Optional[ProviderSession] = None
    token_verified: bool = False
    error: Optional[Exception] = None

    @property
    def can_vote(self) -> bool:
        return self.token_verified and self.user is not None
