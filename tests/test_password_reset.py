"""Tests for requesting and redeeming password reset tokens."""

from urllib.parse import parse_qs, urlparse

import pytest

from sessionauth.service.errors import (
    AuthenticationError,
    NotApplicableError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from sessionauth.service.password_reset import (
    REQUEST_ACCEPTED_MESSAGE,
    PasswordResetFlow,
)


class RecordingNotifier:
    def __init__(self, result=True, error=None):
        self.sent = []
        self.result = result
        self.error = error

    def send_password_reset(self, to_email, reset_link):
        self.sent.append((to_email, reset_link))
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def flow(memory_store, codec, ledger, notifier, hasher):
    return PasswordResetFlow(
        memory_store,
        codec,
        ledger,
        notifier,
        frontend_url="http://frontend.test/",
        hasher=hasher,
    )


def _token_from(link):
    return parse_qs(urlparse(link).query)["token"][0]


class TestRequest:
    async def test_known_email_gets_a_link(self, flow, notifier, auth_service):
        await auth_service.register("alice@example.com", "pw123456", "Alice")

        message = await flow.request(" Alice@Example.com ")

        assert message == REQUEST_ACCEPTED_MESSAGE
        assert len(notifier.sent) == 1
        to_email, link = notifier.sent[0]
        assert to_email == "alice@example.com"
        assert link.startswith("http://frontend.test/reset-password?token=")

    async def test_unknown_email_gets_same_reply_and_no_mail(self, flow, notifier):
        assert await flow.request("nobody@example.com") == REQUEST_ACCEPTED_MESSAGE
        assert await flow.request(None) == REQUEST_ACCEPTED_MESSAGE
        assert notifier.sent == []

    async def test_notifier_failure_is_not_surfaced(self, flow, notifier, auth_service):
        await auth_service.register("alice@example.com", "pw123456", "Alice")
        notifier.error = RuntimeError("smtp down")
        assert await flow.request("alice@example.com") == REQUEST_ACCEPTED_MESSAGE

        notifier.error = None
        notifier.result = False
        assert await flow.request("alice@example.com") == REQUEST_ACCEPTED_MESSAGE


class TestRedeem:
    async def test_reset_changes_password_and_revokes_sessions(
        self, flow, notifier, auth_service
    ):
        registered = await auth_service.register("alice@example.com", "pw123456", "Alice")
        other_session = await auth_service.login("alice@example.com", "pw123456")
        await flow.request("alice@example.com")
        token = _token_from(notifier.sent[0][1])

        await flow.redeem(token, "brand-new-pw")

        with pytest.raises(AuthenticationError):
            await auth_service.login("alice@example.com", "pw123456")
        assert await auth_service.login("alice@example.com", "brand-new-pw")
        for tokens in (registered.tokens, other_session.tokens):
            with pytest.raises(AuthenticationError):
                await auth_service.refresh_access_token(tokens.refresh_token)

    async def test_token_is_reusable_until_expiry(self, flow, notifier, auth_service):
        await auth_service.register("alice@example.com", "pw123456", "Alice")
        await flow.request("alice@example.com")
        token = _token_from(notifier.sent[0][1])

        await flow.redeem(token, "second-pw")
        await flow.redeem(token, "third-pw")
        assert await auth_service.login("alice@example.com", "third-pw")

    async def test_expired_token(self, flow, codec, clock, auth_service):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        token = codec.issue_password_reset_token(result.user.id)
        clock.advance(minutes=16)

        with pytest.raises(AuthenticationError) as exc:
            await flow.redeem(token, "brand-new-pw")
        assert exc.value.message == "Invalid or expired password reset token"

    async def test_access_token_is_not_accepted(self, flow, auth_service):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        with pytest.raises(AuthenticationError):
            await flow.redeem(result.tokens.access_token, "brand-new-pw")

    async def test_short_password_is_rejected_first(self, flow):
        with pytest.raises(ValidationError):
            await flow.redeem("garbage", "123")

    async def test_unknown_user(self, flow, codec):
        token = codec.issue_password_reset_token("no-such-user")
        with pytest.raises(NotFoundError):
            await flow.redeem(token, "brand-new-pw")

    async def test_oauth_only_account_is_not_applicable(self, flow, codec, memory_store):
        user = memory_store.create_user("oauth@example.com", "OAuth")
        token = codec.issue_password_reset_token(user.id)

        with pytest.raises(NotApplicableError) as exc:
            await flow.redeem(token, "brand-new-pw")
        assert exc.value.status_code == 400
        assert exc.value.error_code == "not_applicable"

    async def test_oauth_only_account_gets_reply_but_cannot_redeem(
        self, flow, notifier, memory_store
    ):
        memory_store.create_user("oauth@example.com", "OAuth")
        assert await flow.request("oauth@example.com") == REQUEST_ACCEPTED_MESSAGE

    async def test_update_failure_is_server_error(
        self, flow, codec, auth_service, memory_store, monkeypatch
    ):
        result = await auth_service.register("alice@example.com", "pw123456", "Alice")
        token = codec.issue_password_reset_token(result.user.id)
        monkeypatch.setattr(memory_store, "update_password", lambda *_: False)

        with pytest.raises(ServerError) as exc:
            await flow.redeem(token, "brand-new-pw")
        assert exc.value.message == "Failed to update password"
        # sessions survive when the password did not change
        assert await auth_service.refresh_access_token(result.tokens.refresh_token)
