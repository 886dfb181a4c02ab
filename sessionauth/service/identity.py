from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from sessionauth.logging import get_logger, hash_email
from sessionauth.service.auth import normalize_email
from sessionauth.service.errors import IdentityResolutionError
from sessionauth.storage.errors import ConstraintViolation, StoreUnavailableError
from sessionauth.storage.models import User

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderIdentity:
    """An identity already vouched for by the OAuth provider."""

    provider_name: str
    provider_user_id: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class IdentityResolver:
    """Maps a provider identity to a local user, creating one if needed.

    Lookup order is existing link, then email match (silently linked), then a
    new password-less account. The store runs all three steps in one
    transaction; losing a race to a concurrent resolver rolls that transaction
    back and the sequence is retried once, which then finds the winner's rows.
    """

    max_attempts = 2

    def __init__(self, store) -> None:
        self.store = store

    async def resolve(self, identity: ProviderIdentity) -> User:
        email = normalize_email(identity.email)
        if not identity.provider_name or not identity.provider_user_id or not email:
            raise IdentityResolutionError("provider identity is incomplete")
        full_name = (identity.full_name or "").strip() or email.split("@", 1)[0]

        for attempt in range(1, self.max_attempts + 1):
            try:
                user, outcome = await asyncio.to_thread(
                    self.store.resolve_oauth_identity,
                    identity.provider_name,
                    identity.provider_user_id,
                    email,
                    full_name,
                    identity.avatar_url,
                )
            except ConstraintViolation as exc:
                logger.info(
                    "identity_resolution_conflict",
                    provider=identity.provider_name,
                    attempt=attempt,
                    detail=exc.detail,
                )
                continue
            except StoreUnavailableError:
                raise
            except Exception as exc:
                logger.exception(
                    "identity_resolution_failed", provider=identity.provider_name
                )
                raise IdentityResolutionError("could not resolve identity") from exc

            if user is None:
                logger.error(
                    "identity_link_dangling",
                    provider=identity.provider_name,
                    provider_user_id=identity.provider_user_id,
                )
                raise IdentityResolutionError("linked user is missing")
            logger.info(
                "identity_resolved",
                provider=identity.provider_name,
                outcome=outcome,
                user_id=user.id,
                email_hash=hash_email(email),
            )
            return user

        raise IdentityResolutionError("could not resolve identity")
