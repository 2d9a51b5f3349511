"""
Example: keeping a backend session in step with an identity provider

A toy provider stands in for the real one; it signs tokens locally with the
project's JWT secret, exactly as a provider JWT template would.
"""

import asyncio
import os
import time
from typing import Optional

import jwt

from identity_bridge import (
    AsyncAuthManager,
    BridgeConfiguration,
    ProviderSession,
    WriteNotAuthorizedError,
)


class LocalProvider:
    """Identity provider that always reports the same signed-in user."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    async def current_session(self) -> Optional[ProviderSession]:
        return ProviderSession(
            signed_in=True,
            subject_id="user_2demo",
            email="demo@example.com",
            full_name="Demo User",
        )

    async def issue_token(self, template: str) -> Optional[str]:
        return jwt.encode(
            {
                "sub": "user_2demo",
                "aud": "authenticated",
                "role": "authenticated",
                "exp": int(time.time()) + 3600,
            },
            self._secret,
            algorithm="HS256",
        )


async def main():
    """Main async example."""
    config = BridgeConfiguration.from_env()
    provider = LocalProvider(os.environ["SUPABASE_JWT_SECRET"])

    async with AsyncAuthManager(provider, config) as auth:
        state = auth.state
        print(f"Phase: {state.phase.value}, can vote: {state.can_vote}")
        if state.error:
            print(f"Error: {state.error}")

        # Writes go through run_write so an expired token is refreshed once
        try:
            rows = await auth.run_write(
                lambda client: client.insert(
                    "votes", {"user_id": auth.user.id, "request_id": 1}
                )
            )
            print(f"Inserted vote: {rows}")
        except WriteNotAuthorizedError as e:
            print(f"Cannot vote: {e}")

        # Reads work with whichever client is current, anonymous or not
        categories = await auth.get_client().select("categories", limit=5)
        print(f"Categories: {[c.get('name') for c in categories]}")


if __name__ == "__main__":
    asyncio.run(main())
