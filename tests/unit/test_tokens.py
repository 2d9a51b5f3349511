"""Tests for token inspection helpers."""
import base64
import json
import time

import pytest

from identity_bridge.exceptions import MalformedTokenError
from identity_bridge.tokens import (
    decode_claims,
    describe_token,
    fingerprint,
    is_usable,
    is_well_formed,
)


def _unsigned(payload: dict) -> str:
    def seg(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{seg({'alg': 'HS256', 'typ': 'JWT'})}.{seg(payload)}.c2ln"


class TestDecodeClaims:
    def test_decodes_required_claims(self, make_token):
        token = make_token(sub="user_abc", expires_in=600)
        claims = decode_claims(token)

        assert claims.sub == "user_abc"
        assert claims.aud == "authenticated"
        assert claims.role == "authenticated"
        assert claims.exp > time.time()

    def test_signature_is_not_checked(self):
        claims = decode_claims(_unsigned({"sub": "x", "exp": 2_000_000_000}))
        assert claims.sub == "x"

    def test_expired_token_still_decodes(self, make_token):
        claims = decode_claims(make_token(expires_in=-600))
        assert claims.exp < time.time()

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "###.###.###"])
    def test_bad_shape_raises(self, token):
        with pytest.raises(MalformedTokenError):
            decode_claims(token)

    def test_missing_exp_raises(self):
        with pytest.raises(MalformedTokenError):
            decode_claims(_unsigned({"sub": "x"}))

    def test_missing_sub_raises(self):
        with pytest.raises(MalformedTokenError):
            decode_claims(_unsigned({"exp": 2_000_000_000}))

    def test_is_well_formed(self, make_token):
        assert is_well_formed(make_token())
        assert not is_well_formed("not-a-token")


class TestIsUsable:
    def test_fresh_token_is_usable(self, make_token):
        assert is_usable(make_token(expires_in=3600))

    def test_token_inside_safety_margin_is_not_usable(self):
        now = 1_000_000.0
        token = _unsigned({"sub": "x", "exp": int(now) + 30})
        assert not is_usable(token, safety_margin=30, now=now)
        assert is_usable(token, safety_margin=29, now=now)

    def test_malformed_token_is_not_usable(self):
        assert not is_usable("garbage")


class TestFingerprint:
    def test_fingerprint_is_an_excerpt(self, make_token):
        token = make_token()
        fp = fingerprint(token)

        assert fp == f"{token[:8]}...{token[-8:]}"
        assert token not in fp

    def test_fingerprint_of_missing_token(self):
        assert fingerprint(None) == "<none>"

    def test_short_values_are_not_echoed(self):
        assert fingerprint("short") == "<short>"


class TestDescribeToken:
    def test_does_not_reveal_token(self, make_token):
        token = make_token(sub="user_1234567890")
        info = describe_token(token)

        assert info["sub"] == "user_123..."
        assert info["role"] == "authenticated"
        assert info["length"] == len(token)
        assert token not in json.dumps(info)

    def test_reports_missing_token(self):
        assert describe_token(None) == {"present": False}

    def test_reports_malformed_token(self):
        info = describe_token("a.b")
        assert info["present"] is True
        assert "error" in info
