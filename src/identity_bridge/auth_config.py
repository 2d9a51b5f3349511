import os
from typing import Mapping, Optional


class BridgeConfiguration:  # pylint: disable=too-many-instance-attributes
    """Configuration for the identity bridge."""

    def __init__(
        self,
        supabase_url: str,
        supabase_anon_key: str,
        token_template: str = "supabase",
        safety_margin_seconds: int = 30,
        max_token_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        max_cached_clients: int = 5,
        min_sync_interval_seconds: float = 5.0,
        refresh_interval_seconds: float = 55 * 60,
        request_timeout: int = 30,
        users_table: str = "users",
        sync_rpc: Optional[str] = "sync_clerk_user",
        verification_rpc: str = "is_clerk_authenticated",
        token_store_path: Optional[str] = None,
    ) -> None:
        """Initialize bridge configuration.

        Args:
            supabase_url: Base URL of the Supabase project
            supabase_anon_key: Public anon key, sent as `apikey` on every request
            token_template: Identity provider JWT template to request
            safety_margin_seconds: Tokens expiring within this margin are treated as expired
            max_token_attempts: Attempts per token acquisition before giving up (1-10)
            retry_backoff_seconds: Base delay between attempts, doubled each retry
            max_cached_clients: Upper bound on cached authenticated clients
            min_sync_interval_seconds: Unforced syncs closer than this are ignored
            refresh_interval_seconds: Longest wait between background refreshes
            request_timeout: Backend request timeout in seconds
            users_table: Table holding local user records
            sync_rpc: Atomic upsert function, or None to go straight to table fallbacks
            verification_rpc: Cheap authenticated function used to verify a token
            token_store_path: JSON file used to persist the token across restarts
        """
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not supabase_anon_key:
            raise ValueError("supabase_anon_key is required")
        if not 1 <= max_token_attempts <= 10:
            raise ValueError("max_token_attempts must be between 1 and 10")
        if max_cached_clients < 1:
            raise ValueError("max_cached_clients must be at least 1")
        if safety_margin_seconds < 0 or retry_backoff_seconds < 0 or min_sync_interval_seconds < 0:
            raise ValueError("Intervals must not be negative")
        if refresh_interval_seconds <= safety_margin_seconds:
            raise ValueError("refresh_interval_seconds must exceed safety_margin_seconds")

        self.supabase_url = supabase_url.rstrip("/")
        self.supabase_anon_key = supabase_anon_key
        self.token_template = token_template
        self.safety_margin_seconds = safety_margin_seconds
        self.max_token_attempts = max_token_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_cached_clients = max_cached_clients
        self.min_sync_interval_seconds = min_sync_interval_seconds
        self.refresh_interval_seconds = refresh_interval_seconds
        self.request_timeout = request_timeout
        self.users_table = users_table
        self.sync_rpc = sync_rpc
        self.verification_rpc = verification_rpc
        self.token_store_path = token_store_path

    @property
    def rest_url(self) -> str:
        return f"{self.supabase_url}/rest/v1"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "BridgeConfiguration":
        """Build a configuration from environment variables.

        Accepts both `SUPABASE_URL` / `SUPABASE_ANON_KEY` and the `VITE_`-prefixed
        names used by the web front end.
        """
        env = os.environ if env is None else env

        def _get(*names: str) -> Optional[str]:
            for name in names:
                value = env.get(name)
                if value:
                    return value
            return None

        kwargs = {}
        template = _get("IDENTITY_BRIDGE_TOKEN_TEMPLATE")
        if template:
            kwargs["token_template"] = template
        store = _get("IDENTITY_BRIDGE_TOKEN_STORE")
        if store:
            kwargs["token_store_path"] = store

        return cls(
            supabase_url=_get("SUPABASE_URL", "VITE_SUPABASE_URL") or "",
            supabase_anon_key=_get("SUPABASE_ANON_KEY", "VITE_SUPABASE_ANON_KEY") or "",
            **kwargs,
        )
