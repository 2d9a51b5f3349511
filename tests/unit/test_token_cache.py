"""Tests for the token cache and its persistent stores."""
import json

import pytest

from identity_bridge.exceptions import MalformedTokenError
from identity_bridge.token_cache import FileTokenStore, MemoryTokenStore, TokenCache


class TestTokenCache:
    """In-memory behaviour of the cache slot."""

    def test_empty_cache_is_invalid(self, clock):
        cache = TokenCache(clock=clock)
        assert not cache.is_valid()
        assert cache.get() is None
        assert cache.expires_in() is None

    def test_valid_immediately_after_set(self, clock, make_token):
        cache = TokenCache(clock=clock)
        token = make_token(now=clock.now, expires_in=3600)
        cache.set(token)

        assert cache.is_valid()
        assert cache.get() == token
        assert cache.entry.fetched_at == clock.now

    def test_becomes_invalid_at_safety_margin(self, clock, make_token):
        """Validity flips purely because time passes."""
        cache = TokenCache(safety_margin=30, clock=clock)
        cache.set(make_token(now=clock.now, expires_in=3600))

        clock.advance(3600 - 31)
        assert cache.is_valid()

        clock.advance(1)
        assert not cache.is_valid()

    def test_get_returns_stale_token(self, clock, make_token):
        cache = TokenCache(clock=clock)
        token = make_token(now=clock.now, expires_in=60)
        cache.set(token)
        clock.advance(120)

        assert not cache.is_valid()
        assert cache.get() == token

    def test_set_replaces_entry_atomically(self, clock, make_token):
        cache = TokenCache(clock=clock)
        cache.set(make_token(now=clock.now, expires_in=60))
        first = cache.entry

        clock.advance(10)
        second_token = make_token(now=clock.now, expires_in=3600)
        cache.set(second_token)

        assert cache.entry is not first
        assert cache.entry.token == second_token
        assert cache.entry.fetched_at == clock.now
        assert cache.entry.expires_at == int(clock.now + 3600)

    def test_set_none_clears(self, clock, make_token):
        cache = TokenCache(clock=clock)
        cache.set(make_token(now=clock.now))
        cache.set(None)

        assert cache.entry is None
        assert not cache.is_valid()

    def test_malformed_token_is_rejected(self, clock, make_token):
        cache = TokenCache(clock=clock)
        token = make_token(now=clock.now)
        cache.set(token)

        with pytest.raises(MalformedTokenError):
            cache.set("not.a.token")
        assert cache.get() == token


class TestTokenCachePersistence:
    """Restoring and discarding persisted tokens."""

    def test_set_persists_token_and_expiry(self, clock, make_token):
        store = MemoryTokenStore()
        cache = TokenCache(store=store, clock=clock)
        token = make_token(now=clock.now, expires_in=3600)
        cache.set(token)

        assert store.load() == (token, float(int(clock.now + 3600)))

    def test_clear_removes_persisted_token(self, clock, make_token):
        store = MemoryTokenStore()
        cache = TokenCache(store=store, clock=clock)
        cache.set(make_token(now=clock.now))
        cache.clear()

        assert store.load() is None

    def test_valid_persisted_token_is_restored(self, clock, make_token):
        store = MemoryTokenStore()
        token = make_token(now=clock.now, expires_in=3600)
        store.save(token, clock.now + 3600)

        cache = TokenCache(store=store, clock=clock)

        assert cache.is_valid()
        assert cache.get() == token

    def test_expired_persisted_token_is_discarded_on_load(self, clock, make_token):
        """A token that expired ten minutes ago is never reported valid."""
        store = MemoryTokenStore()
        token = make_token(now=clock.now, expires_in=-600)
        store.save(token, clock.now - 600)

        cache = TokenCache(store=store, clock=clock)

        assert cache.get() is None
        assert not cache.is_valid()
        assert store.load() is None

    def test_expiry_claim_wins_over_stored_expiry(self, clock, make_token):
        store = MemoryTokenStore()
        token = make_token(now=clock.now, expires_in=-600)
        store.save(token, clock.now + 3600)

        cache = TokenCache(store=store, clock=clock)

        assert cache.get() is None

    def test_malformed_persisted_token_is_discarded(self, clock):
        store = MemoryTokenStore()
        store.save("broken", clock.now + 3600)

        cache = TokenCache(store=store, clock=clock)

        assert cache.get() is None
        assert store.load() is None


class TestFileTokenStore:
    def test_round_trip(self, tmp_path):
        store = FileTokenStore(str(tmp_path / "token.json"))
        store.save("abc.def.ghi", 123.0)

        assert store.load() == ("abc.def.ghi", 123.0)

    def test_missing_file_loads_nothing(self, tmp_path):
        assert FileTokenStore(str(tmp_path / "absent.json")).load() is None

    def test_corrupt_file_loads_nothing(self, tmp_path):
        path = tmp_path / "token.json"
        path.write_text("{not json")

        assert FileTokenStore(str(path)).load() is None

    def test_failed_write_leaves_no_temp_file(self, tmp_path):
        path = tmp_path / "token.json"
        store = FileTokenStore(str(path))
        store.save("abc.def.ghi", 1.0)

        with pytest.raises(TypeError):
            store.save("abc.def.ghi", object())

        assert not (tmp_path / "token.json.tmp").exists()
        assert store.load() == ("abc.def.ghi", 1.0)

    def test_clear_is_idempotent(self, tmp_path):
        path = tmp_path / "token.json"
        store = FileTokenStore(str(path))
        store.save("abc.def.ghi", 1.0)
        store.clear()
        store.clear()

        assert not path.exists()

    def test_cache_survives_restart(self, tmp_path, clock, make_token):
        path = str(tmp_path / "token.json")
        token = make_token(now=clock.now, expires_in=3600)
        TokenCache(store=FileTokenStore(path), clock=clock).set(token)

        restored = TokenCache(store=FileTokenStore(path), clock=clock)

        assert restored.get() == token
        assert json.loads((tmp_path / "token.json").read_text())["token"] == token
