"""Tests for the refresh-token ledger on top of the in-memory store."""

from datetime import timedelta

from sessionauth.service.ledger import RefreshTokenLedger, hash_token


def _user(memory_store, email="ledger@example.com"):
    return memory_store.create_user(email, "Ledger User", password_hash="x")


class TestRefreshTokenLedger:
    """Store, validate, revoke and purge refresh-token records."""

    def test_hash_is_sha256_hex(self):
        digest = hash_token("some.jwt.value")
        assert len(digest) == 64
        assert digest == hash_token("some.jwt.value")
        assert digest != hash_token("some.jwt.valuf")

    def test_raw_token_is_never_stored(self, ledger, memory_store, clock):
        user = _user(memory_store)
        ledger.store(user.id, "raw-refresh-token", clock() + timedelta(days=7))

        assert "raw-refresh-token" not in memory_store.refresh_tokens
        assert hash_token("raw-refresh-token") in memory_store.refresh_tokens

    def test_stored_token_is_valid_for_its_owner_only(self, ledger, memory_store, clock):
        owner = _user(memory_store)
        other = _user(memory_store, "other@example.com")
        ledger.store(owner.id, "tok", clock() + timedelta(days=7))

        assert ledger.is_valid("tok", owner.id)
        assert not ledger.is_valid("tok", other.id)
        assert not ledger.is_valid("unknown", owner.id)

    def test_expired_record_is_not_valid(self, ledger, memory_store, clock):
        user = _user(memory_store)
        ledger.store(user.id, "tok", clock() + timedelta(days=7))

        clock.advance(days=7)
        assert not ledger.is_valid("tok", user.id)

    def test_revoke_is_idempotent(self, ledger, memory_store, clock):
        user = _user(memory_store)
        ledger.store(user.id, "tok", clock() + timedelta(days=7))

        ledger.revoke("tok")
        ledger.revoke("tok")
        ledger.revoke("never-issued")

        assert not ledger.is_valid("tok", user.id)

    def test_revoke_all_for_user_leaves_other_users(self, ledger, memory_store, clock):
        alice = _user(memory_store, "alice@example.com")
        bob = _user(memory_store, "bob@example.com")
        expires = clock() + timedelta(days=7)
        ledger.store(alice.id, "a1", expires)
        ledger.store(alice.id, "a2", expires)
        ledger.store(bob.id, "b1", expires)

        assert ledger.revoke_all_for_user(alice.id) == 2
        assert not ledger.is_valid("a1", alice.id)
        assert not ledger.is_valid("a2", alice.id)
        assert ledger.is_valid("b1", bob.id)
        assert ledger.revoke_all_for_user(alice.id) == 0

    def test_purge_expired_drops_only_stale_records(self, ledger, memory_store, clock):
        user = _user(memory_store)
        ledger.store(user.id, "short", clock() + timedelta(hours=1))
        ledger.store(user.id, "long", clock() + timedelta(days=7))

        clock.advance(hours=2)
        assert ledger.purge_expired() == 1
        assert hash_token("short") not in memory_store.refresh_tokens
        assert ledger.is_valid("long", user.id)

    def test_uses_injected_clock(self, memory_store, clock):
        user = _user(memory_store)
        ledger = RefreshTokenLedger(memory_store, now=clock)
        ledger.store(user.id, "tok", clock() + timedelta(minutes=5))

        clock.advance(minutes=4)
        assert ledger.is_valid("tok", user.id)
        clock.advance(minutes=1)
        assert not ledger.is_valid("tok", user.id)
