from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Callable, Optional

from sessionauth.logging import get_logger
from sessionauth.storage.models import RefreshTokenRecord

logger = get_logger(__name__)


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of a signed refresh token; the raw token is never stored."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class RefreshTokenLedger:
    """Server-side record of issued refresh tokens, keyed by hash.

    A refresh token is usable only while its JWT verifies AND its hash is in
    the ledger, which is what makes logout and password reset revoke sessions.
    """

    def __init__(
        self,
        store,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self.now = now

    hash_token = staticmethod(hash_token)

    def store(
        self, user_id: str, raw_token: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        return self._store.insert_refresh_token(hash_token(raw_token), user_id, expires_at)

    def is_valid(self, raw_token: str, user_id: str) -> bool:
        record: Optional[RefreshTokenRecord] = self._store.get_refresh_token(
            hash_token(raw_token), user_id, now=self.now()
        )
        return record is not None

    def revoke(self, raw_token: str) -> None:
        removed = self._store.delete_refresh_token(hash_token(raw_token))
        logger.info("refresh_token_revoked", found=removed)

    def revoke_all_for_user(self, user_id: str) -> int:
        removed = self._store.delete_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=removed)
        return removed

    def purge_expired(self) -> int:
        removed = self._store.delete_expired_refresh_tokens(self.now())
        if removed:
            logger.info("refresh_tokens_purged", count=removed)
        return removed
