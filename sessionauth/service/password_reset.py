from __future__ import annotations

import asyncio
from typing import Optional, Protocol
from urllib.parse import quote

from sessionauth.logging import get_logger, hash_email
from sessionauth.service.auth import (
    PasswordHashing,
    normalize_email,
    validate_password,
)
from sessionauth.service.errors import (
    AuthenticationError,
    NotApplicableError,
    NotFoundError,
    ServerError,
)
from sessionauth.service.ledger import RefreshTokenLedger
from sessionauth.service.tokens import TokenCodec

logger = get_logger(__name__)

REQUEST_ACCEPTED_MESSAGE = (
    "If your email is registered, you will receive a password reset link."
)


class ResetNotifier(Protocol):
    def send_password_reset(self, to_email: str, reset_link: str) -> bool: ...


class PasswordResetFlow:
    def __init__(
        self,
        store,
        codec: TokenCodec,
        ledger: RefreshTokenLedger,
        notifier: ResetNotifier,
        *,
        frontend_url: str,
        hasher: PasswordHashing,
    ) -> None:
        self.store = store
        self.codec = codec
        self.ledger = ledger
        self.notifier = notifier
        self.frontend_url = frontend_url.rstrip("/")
        self.hasher = hasher

    def reset_link(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={quote(token, safe='')}"

    async def request(self, email: Optional[str]) -> str:
        """Send a reset link if the account exists; the reply never says which."""
        email = normalize_email(email)
        user = (
            await asyncio.to_thread(self.store.get_user_by_email, email) if email else None
        )
        if not user:
            logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return REQUEST_ACCEPTED_MESSAGE

        token = self.codec.issue_password_reset_token(user.id)
        link = self.reset_link(token)
        try:
            sent = await asyncio.to_thread(
                self.notifier.send_password_reset, user.email, link
            )
        except Exception as exc:
            logger.warning(
                "password_reset_notify_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
            )
        else:
            if not sent:
                logger.warning("password_reset_notify_failed", user_id=user.id)
        logger.info("password_reset_requested", user_id=user.id)
        return REQUEST_ACCEPTED_MESSAGE

    async def redeem(self, token: Optional[str], new_password: Optional[str]) -> None:
        validate_password(new_password)
        payload = self.codec.verify_password_reset_token(token or "")
        if not payload:
            raise AuthenticationError("Invalid or expired password reset token")

        user = await asyncio.to_thread(self.store.get_user, payload.user_id)
        if not user:
            logger.info("password_reset_user_missing", user_id=payload.user_id)
            raise NotFoundError("User not found")
        if not user.has_password:
            raise NotApplicableError(
                "Password reset is not applicable for accounts without a password"
            )

        password_hash = await self.hasher.hash(new_password)
        updated = await asyncio.to_thread(self.store.update_password, user.id, password_hash)
        if not updated:
            logger.error("password_update_failed", user_id=user.id)
            raise ServerError("Failed to update password")
        revoked = await asyncio.to_thread(self.ledger.revoke_all_for_user, user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
