"""Configuration and connectivity checks for the identity bridge.

Run with `python -m identity_bridge.diagnostics`.
"""

import logging
import os
import sys
import time
from typing import List, Mapping, Optional

import jwt as pyjwt
import requests
from pydantic import BaseModel, Field

from .auth_config import BridgeConfiguration

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "SUPABASE_JWT_SECRET",
)

RECOMMENDATIONS = [
    'Verify the identity provider JWT template is named "supabase"',
    'The template must contain the claims {"role": "authenticated", "aud": "authenticated"}',
    "The template must be signed with HS256 using the Supabase JWT secret",
    "Ensure every table has row-level security policies for the authenticated role",
]


class DiagnosticsReport(BaseModel):
    missing_env_vars: List[str] = Field(default_factory=list)
    backend_reachable: Optional[bool] = None
    backend_error: Optional[str] = None
    jwt_secret_ok: Optional[bool] = None
    jwt_secret_error: Optional[str] = None
    recommendations: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return (
            not self.missing_env_vars
            and self.backend_reachable is True
            and self.jwt_secret_ok is not False
        )


def check_backend(
    config: BridgeConfiguration,
    session: Optional[requests.Session] = None,
    timeout: float = 10,
) -> Optional[str]:
    """Read one row of the users table with the anon key; return an error message or None."""
    http = session or requests.Session()
    try:
        response = http.get(
            f"{config.rest_url}/{config.users_table}",
            params={"select": "id", "limit": "1"},
            headers={
                "apikey": config.supabase_anon_key,
                "Authorization": f"Bearer {config.supabase_anon_key}",
            },
            timeout=timeout,
        )
    except requests.RequestException as e:
        return str(e)
    if response.status_code != 200:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    return None


def check_jwt_secret(secret: str) -> Optional[str]:
    """Sign and verify a short-lived token the way the provider template should."""
    try:
        token = pyjwt.encode(
            {
                "sub": "test_user_id",
                "aud": "authenticated",
                "role": "authenticated",
                "exp": int(time.time()) + 60,
            },
            secret,
            algorithm="HS256",
        )
        pyjwt.decode(token, secret, algorithms=["HS256"], audience="authenticated")
    except pyjwt.PyJWTError as e:
        return str(e)
    return None


def run_diagnostics(
    config: Optional[BridgeConfiguration] = None,
    env: Optional[Mapping[str, str]] = None,
    jwt_secret: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> DiagnosticsReport:
    env = os.environ if env is None else env
    report = DiagnosticsReport()

    for name in REQUIRED_ENV_VARS:
        if not (env.get(name) or env.get(f"VITE_{name}")):
            report.missing_env_vars.append(name)

    if config is None:
        try:
            config = BridgeConfiguration.from_env(env)
        except ValueError as e:
            report.backend_reachable = False
            report.backend_error = str(e)

    if config is not None:
        error = check_backend(config, session=session)
        report.backend_reachable = error is None
        report.backend_error = error

    secret = jwt_secret or env.get("SUPABASE_JWT_SECRET")
    if secret:
        error = check_jwt_secret(secret)
        report.jwt_secret_ok = error is None
        report.jwt_secret_error = error

    if not report.ok:
        report.recommendations = list(RECOMMENDATIONS)
    return report


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    report = run_diagnostics()

    print("=== Identity bridge diagnostics ===")
    if report.missing_env_vars:
        print("Missing environment variables: " + ", ".join(report.missing_env_vars))
    else:
        print("All required environment variables are present.")

    if report.backend_reachable:
        print("Backend reachable with the anon key.")
    else:
        print(f"Backend check failed: {report.backend_error}")

    if report.jwt_secret_ok is None:
        print("JWT secret not provided, skipped.")
    elif report.jwt_secret_ok:
        print("JWT secret verification succeeded.")
    else:
        print(f"JWT secret verification failed: {report.jwt_secret_error}")

    for line in report.recommendations:
        print(f"- {line}")
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
