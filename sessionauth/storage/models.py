from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    full_name: str
    password_hash: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class OAuthIdentity:
    """Link between a provider account and a local user; never mutated."""

    provider_name: str
    provider_user_id: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
