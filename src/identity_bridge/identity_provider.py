from typing import Optional, Protocol

from .models.session import ProviderSession


class IdentityProvider(Protocol):
    """Protocol for the external identity provider."""

    async def current_session(self) -> Optional[ProviderSession]:
        """Return the provider's current session, or None if there is none."""

    async def issue_token(self, template: str) -> Optional[str]:
        """Mint a short-lived bearer token from a named JWT template.

        Args:
            template: Name of the provider's JWT template

        Returns:
            Encoded token, or None if the provider declined to issue one
        """
