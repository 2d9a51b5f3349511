from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class UserRecord(BaseModel):
    model_config = {"populate_by_name": True}

    id: str = Field(..., description="Primary key; equals the identity provider subject.")
    email: str = Field(..., description="Unique email address.")
    full_name: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("full_name", "fullName"),
        description="Display name copied from the provider profile.",
    )
    avatar_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("avatar_url", "avatarUrl"),
        description="Avatar URL copied from the provider profile.",
    )
    created_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("created_at", "createdAt")
    )
    updated_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("updated_at", "updatedAt")
    )
