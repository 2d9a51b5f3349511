"""Bearer token inspection.

The bridge never verifies token signatures, it only reads the claims it needs
to decide whether a token is still worth presenting to the backend. The
backend performs the actual signature check.
"""

import time
from typing import Any, Dict, Optional

import jwt as pyjwt
from pydantic import ValidationError as PydanticValidationError

from .exceptions import MalformedTokenError
from .models.claims import TokenClaims

_UNVERIFIED = {
    "verify_signature": False,
    "verify_exp": False,
    "verify_aud": False,
    "verify_iat": False,
    "verify_nbf": False,
}


def decode_claims(token: Optional[str]) -> TokenClaims:
    """Decode the payload segment of a token.

    Raises:
        MalformedTokenError: Not three segments, undecodable, or missing `sub`/`exp`.
    """
    if not token or not isinstance(token, str) or token.count(".") != 2:
        raise MalformedTokenError("Token must have three dot-separated segments")
    try:
        payload = pyjwt.decode(token, options=_UNVERIFIED)
        return TokenClaims(**payload)
    except (pyjwt.InvalidTokenError, PydanticValidationError, TypeError) as e:
        raise MalformedTokenError(f"Token payload could not be decoded: {e}") from e


def is_well_formed(token: Optional[str]) -> bool:
    try:
        decode_claims(token)
    except MalformedTokenError:
        return False
    return True


def is_usable(
    token: Optional[str],
    safety_margin: float = 30,
    now: Optional[float] = None,
) -> bool:
    """True iff the token decodes and expires more than `safety_margin` seconds from now."""
    try:
        claims = decode_claims(token)
    except MalformedTokenError:
        return False
    now = time.time() if now is None else now
    return now < claims.exp - safety_margin


def fingerprint(token: Optional[str]) -> str:
    """Short excerpt of a token, safe for cache keys and logs."""
    if not token:
        return "<none>"
    if len(token) <= 16:
        return "<short>"
    return f"{token[:8]}...{token[-8:]}"


def describe_token(token: Optional[str]) -> Dict[str, Any]:
    """Summarise a token for debug logging without revealing it."""
    if not token:
        return {"present": False}
    try:
        claims = decode_claims(token)
    except MalformedTokenError as e:
        return {"present": True, "length": len(token), "error": str(e)}
    audience = claims.aud if claims.aud is not None else "missing"
    return {
        "present": True,
        "length": len(token),
        "sub": f"{claims.sub[:8]}..." if claims.sub else "missing",
        "role": claims.role or "missing",
        "aud": audience,
        "exp": claims.expires_at.isoformat(),
    }
