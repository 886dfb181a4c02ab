"""Unit tests for AuthService: register, login, logout, refresh and /me."""

import threading
from datetime import timedelta

import pytest

from sessionauth.service.auth import (
    AuthService,
    normalize_email,
    validate_email,
    validate_password,
)
from sessionauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from sessionauth.service.ledger import hash_token
from sessionauth.service.tokens import AccessTokenPayload


class TestInputHelpers:
    def test_normalize_email(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"
        assert normalize_email(None) == ""

    @pytest.mark.parametrize("email", ["alice", "alice@", "@example.com", "a b@c.d", "a@b"])
    def test_invalid_email_formats(self, email):
        with pytest.raises(ValidationError):
            validate_email(email)

    def test_valid_email(self):
        validate_email("alice@example.com")

    def test_password_minimum_length(self):
        validate_password("123456")
        with pytest.raises(ValidationError) as exc:
            validate_password("12345")
        assert "at least 6" in exc.value.message


class TestRegister:
    """Registration creates a password user and a recorded token pair."""

    async def test_register_returns_user_and_tokens(self, auth_service, memory_store):
        result = await auth_service.register("Alice@Example.com", "pw123456", "Alice")

        assert result.user.email == "alice@example.com"
        assert result.user.full_name == "Alice"
        assert not hasattr(result.user, "password_hash")
        stored = memory_store.get_user(result.user.id)
        assert stored.password_hash.startswith("$argon2id$")
        assert hash_token(result.tokens.refresh_token) in memory_store.refresh_tokens

    @pytest.mark.parametrize(
        "email,password,name",
        [(None, "pw123456", "A"), ("a@b.co", None, "A"), ("a@b.co", "pw123456", "  ")],
    )
    async def test_missing_fields(self, auth_service, email, password, name):
        with pytest.raises(ValidationError) as exc:
            await auth_service.register(email, password, name)
        assert exc.value.message == "Email, password, and full name are required"

    async def test_bad_email_and_short_password(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("not-an-email", "pw123456", "A")
        with pytest.raises(ValidationError):
            await auth_service.register("a@b.co", "123", "A")

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("alice@example.com", "pw123456", "Alice")
        with pytest.raises(ConflictError) as exc:
            await auth_service.register("ALICE@example.com", "different", "Alice 2")
        assert exc.value.status_code == 409

    async def test_insert_race_maps_to_conflict(self, auth_service, memory_store):
        # the pre-check passes but the insert loses to a concurrent writer
        original = memory_store.get_user_by_email
        memory_store.get_user_by_email = lambda email: None
        memory_store.create_user("alice@example.com", "First")
        try:
            with pytest.raises(ConflictError):
                await auth_service.register("alice@example.com", "pw123456", "Alice")
        finally:
            memory_store.get_user_by_email = original

    async def test_signup_disabled(self, memory_store, codec, ledger, hasher):
        service = AuthService(memory_store, codec, ledger, hasher=hasher, allow_signup=False)
        with pytest.raises(ForbiddenError):
            await service.register("a@b.co", "pw123456", "A")


class TestLogin:
    async def test_login_success(self, auth_service):
        await auth_service.register("alice@example.com", "pw123456", "Alice")
        result = await auth_service.login(" ALICE@example.com", "pw123456")

        assert result.user.email == "alice@example.com"
        payload = auth_service.codec.verify_access_token(result.tokens.access_token)
        assert payload.email == "alice@example.com"

    async def test_failures_are_indistinguishable(self, auth_service, memory_store):
        await auth_service.register("alice@example.com", "pw123456", "Alice")
        memory_store.create_user("oauth@example.com", "OAuth Only")

        messages = []
        for email, password in [
            ("alice@example.com", "wrong-password"),
            ("nobody@example.com", "pw123456"),
            ("oauth@example.com", "pw123456"),
        ]:
            with pytest.raises(AuthenticationError) as exc:
                await auth_service.login(email, password)
            messages.append((exc.value.status_code, exc.value.message))

        assert set(messages) == {(401, "Invalid email or password")}

    async def test_missing_fields(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.login("", "pw")

    async def test_each_login_adds_a_ledger_record(self, auth_service, memory_store):
        await auth_service.register("alice@example.com", "pw123456", "Alice")
        await auth_service.login("alice@example.com", "pw123456")
        await auth_service.login("alice@example.com", "pw123456")
        assert len(memory_store.refresh_tokens) == 3


class TestRefreshAndLogout:
    async def test_refresh_returns_new_access_token(self, auth_service, clock):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        clock.advance(seconds=5)

        access = await auth_service.refresh_access_token(result.tokens.refresh_token)

        assert access != result.tokens.access_token
        payload = auth_service.codec.verify_access_token(access)
        assert payload.user_id == result.user.id

    async def test_refresh_does_not_rotate(self, auth_service):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        await auth_service.refresh_access_token(result.tokens.refresh_token)
        # the same refresh token keeps working
        await auth_service.refresh_access_token(result.tokens.refresh_token)

    async def test_refresh_after_logout_is_rejected(self, auth_service):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        await auth_service.logout(result.tokens.refresh_token)

        with pytest.raises(AuthenticationError) as exc:
            await auth_service.refresh_access_token(result.tokens.refresh_token)
        assert exc.value.message == "invalid or expired refresh token"

    async def test_logout_is_idempotent(self, auth_service):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        await auth_service.logout(result.tokens.refresh_token)
        await auth_service.logout(result.tokens.refresh_token)
        await auth_service.logout("garbage")
        await auth_service.logout(None)

    async def test_logout_only_revokes_that_session(self, auth_service):
        first = await auth_service.register("alice@example.com", "pw123456", "Alice")
        second = await auth_service.login("alice@example.com", "pw123456")
        await auth_service.logout(first.tokens.refresh_token)

        assert await auth_service.refresh_access_token(second.tokens.refresh_token)

    async def test_expired_refresh_token(self, auth_service, clock):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        clock.advance(days=7, seconds=1)
        with pytest.raises(AuthenticationError):
            await auth_service.refresh_access_token(result.tokens.refresh_token)

    async def test_access_token_cannot_refresh(self, auth_service):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        with pytest.raises(AuthenticationError):
            await auth_service.refresh_access_token(result.tokens.access_token)

    async def test_empty_refresh_token(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.refresh_access_token("")

    async def test_refresh_for_deleted_user(self, auth_service, memory_store):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        # delete the user but keep its ledger record so the lookup is what fails
        memory_store.users.pop(result.user.id)
        with pytest.raises(NotFoundError):
            await auth_service.refresh_access_token(result.tokens.refresh_token)


class TestCurrentUser:
    async def test_current_user(self, auth_service, clock):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        principal = auth_service.codec.verify_access_token(result.tokens.access_token)

        user = await auth_service.get_current_user(principal)
        assert user.id == result.user.id

    async def test_missing_user(self, auth_service, clock):
        ts = int(clock().timestamp())
        principal = AccessTokenPayload(
            user_id="gone", email="gone@example.com", issued_at=ts,
            expires_at=ts + int(timedelta(minutes=15).total_seconds()), jti="j",
        )
        with pytest.raises(NotFoundError):
            await auth_service.get_current_user(principal)


class TestStoreCallsLeaveTheEventLoop:
    """Store and ledger I/O runs in worker threads, never on the loop thread."""

    _METHODS = (
        "get_user_by_email",
        "create_user",
        "get_user",
        "insert_refresh_token",
        "get_refresh_token",
        "delete_refresh_token",
    )

    async def test_every_operation(self, auth_service, memory_store, monkeypatch):
        loop_thread = threading.get_ident()
        calls = []

        def recording(name, original):
            def wrapper(*args, **kwargs):
                calls.append((name, threading.get_ident()))
                return original(*args, **kwargs)

            return wrapper

        for name in self._METHODS:
            monkeypatch.setattr(memory_store, name, recording(name, getattr(memory_store, name)))

        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        await auth_service.login("alice@example.com", "pw123456")
        principal = auth_service.codec.verify_access_token(result.tokens.access_token)
        await auth_service.get_current_user(principal)
        await auth_service.refresh_access_token(result.tokens.refresh_token)
        await auth_service.logout(result.tokens.refresh_token)

        assert {name for name, _ in calls} == set(self._METHODS)
        assert all(ident != loop_thread for _, ident in calls)


class TestPasswordlessAccounts:
    async def test_empty_hash_counts_as_no_password(self, auth_service, memory_store):
        user = memory_store.create_user("blank@example.com", "Blank", password_hash="")
        assert not user.has_password

        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("blank@example.com", "pw123456")
        assert exc.value.message == "Invalid email or password"
