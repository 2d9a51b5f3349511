from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class TokenClaims(BaseModel):
    model_config = {"extra": "allow"}

    sub: str = Field(..., description="Subject identifier assigned by the identity provider.")
    aud: Union[str, List[str], None] = Field(
        None, description="Audience the token was minted for, usually `authenticated`."
    )
    role: Optional[str] = Field(
        None, description="Postgres role the backend assumes for this token."
    )
    exp: int = Field(..., description="Expiry in seconds since the epoch.")
    iat: Optional[int] = Field(None, description="Issued-at in seconds since the epoch.")
    email: Optional[str] = Field(None, description="Email claim, if the template includes one.")

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)
