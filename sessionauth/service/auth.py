from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionauth.logging import get_logger, hash_email
from sessionauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from sessionauth.service.ledger import RefreshTokenLedger
from sessionauth.service.refresh import RefreshCoordinator
from sessionauth.service.tokens import AccessTokenPayload, TokenCodec
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import OAuthIdentity, RefreshTokenRecord, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_INVALID_CREDENTIALS = "Invalid email or password"
_INVALID_REFRESH = "invalid or expired refresh token"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: Optional[str] = None,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...

    def get_oauth_identity(
        self, provider_name: str, provider_user_id: str
    ) -> Optional[OAuthIdentity]: ...

    def create_oauth_identity(
        self, provider_name: str, provider_user_id: str, user_id: str
    ) -> OAuthIdentity: ...

    def resolve_oauth_identity(
        self,
        provider_name: str,
        provider_user_id: str,
        email: str,
        full_name: str,
        avatar_url: Optional[str] = None,
    ) -> tuple[Optional[User], str]: ...

    def insert_refresh_token(
        self, token_hash: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def get_refresh_token(
        self, token_hash: str, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]: ...

    def delete_refresh_token(self, token_hash: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class UserPublic:
    """User projection safe to return to clients (no password hash)."""

    id: str
    email: str
    full_name: str
    avatar_url: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            avatar_url=user.avatar_url,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class AuthResult:
    user: UserPublic
    tokens: TokenPair


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> None:
    if not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email format", detail={"field": "email"})


def validate_password(password: Optional[str]) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
            detail={"field": "password"},
        )


class PasswordHashing:
    """argon2id hashing offloaded to worker threads."""

    def __init__(self, *, time_cost: int = 3) -> None:
        self._pwd_hasher = PasswordHasher(time_cost=time_cost, type=Type.ID)
        self._dummy_hash: Optional[str] = None

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    async def verify(self, stored_hash: Optional[str], password: str) -> bool:
        """Check a password; a missing hash still costs one full verification."""
        if not stored_hash:
            await asyncio.to_thread(self._burn, password)
            return False
        return await asyncio.to_thread(self._verify_sync, stored_hash, password)

    def _verify_sync(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def _burn(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("timing-equaliser")
        self._verify_sync(self._dummy_hash, password)


class AuthService:
    """Registration, login, logout and access-token refresh."""

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        ledger: RefreshTokenLedger,
        *,
        hasher: PasswordHashing,
        allow_signup: bool = True,
    ) -> None:
        self.store: AuthStore = store
        self.codec = codec
        self.ledger = ledger
        self.hasher = hasher
        self.allow_signup = allow_signup
        self.coordinator = RefreshCoordinator(self._verify_and_mint)
        self.logger = logger

    def issue_token_pair(self, user: User) -> TokenPair:
        """Mint an access/refresh pair and record the refresh token's hash."""
        access_token = self.codec.issue_access_token(user.id, user.email)
        refresh_token = self.codec.issue_refresh_token(user.id)
        self.ledger.store(user.id, refresh_token, self.codec.now() + self.codec.refresh_ttl)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    async def register(
        self, email: Optional[str], password: Optional[str], full_name: Optional[str]
    ) -> AuthResult:
        if not email or not password or not full_name or not full_name.strip():
            raise ValidationError("Email, password, and full name are required")
        if not self.allow_signup:
            raise ForbiddenError("signup is disabled")
        email = normalize_email(email)
        validate_email(email)
        validate_password(password)

        if await asyncio.to_thread(self.store.get_user_by_email, email):
            self.logger.info("register_conflict", email_hash=hash_email(email))
            raise ConflictError("User with this email already exists")

        password_hash = await self.hasher.hash(password)
        try:
            user = await asyncio.to_thread(
                self.store.create_user,
                email,
                full_name.strip(),
                password_hash=password_hash,
            )
        except ConstraintViolation:
            # lost a race with a concurrent registration for the same email
            self.logger.info("register_conflict", email_hash=hash_email(email), race=True)
            raise ConflictError("User with this email already exists")

        tokens = await asyncio.to_thread(self.issue_token_pair, user)
        self.logger.info("user_registered", user_id=user.id)
        return AuthResult(user=UserPublic.from_user(user), tokens=tokens)

    async def login(self, email: Optional[str], password: Optional[str]) -> AuthResult:
        if not email or not password:
            raise ValidationError("Email and password are required")
        email = normalize_email(email)
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if not user:
            await self.hasher.verify(None, password)
            self.logger.warning(
                "login_failed", reason="user_missing", email_hash=hash_email(email)
            )
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not user.has_password:
            await self.hasher.verify(None, password)
            self.logger.warning("login_failed", reason="no_password", user_id=user.id)
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not await self.hasher.verify(user.password_hash, password):
            self.logger.warning("login_failed", reason="mismatch", user_id=user.id)
            raise AuthenticationError(_INVALID_CREDENTIALS)

        tokens = await asyncio.to_thread(self.issue_token_pair, user)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=UserPublic.from_user(user), tokens=tokens)

    async def logout(self, raw_refresh_token: Optional[str]) -> None:
        """Revoke one refresh token; unknown or malformed tokens are ignored."""
        if not raw_refresh_token:
            return
        await asyncio.to_thread(self.ledger.revoke, raw_refresh_token)

    async def get_current_user(self, principal: AccessTokenPayload) -> UserPublic:
        user = await asyncio.to_thread(self.store.get_user, principal.user_id)
        if not user:
            self.logger.info("current_user_missing", user_id=principal.user_id)
            raise NotFoundError("User not found")
        return UserPublic.from_user(user)

    async def refresh_access_token(self, raw_refresh_token: Optional[str]) -> str:
        if not raw_refresh_token:
            raise ValidationError("Refresh token is required", detail={"field": "token"})
        return await self.coordinator.refresh(raw_refresh_token)

    async def _verify_and_mint(self, raw_refresh_token: str) -> str:
        try:
            payload = self.codec.verify_refresh_token(raw_refresh_token)
        except (TokenExpiredError, TokenInvalidError) as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            raise AuthenticationError(_INVALID_REFRESH)
        in_ledger = await asyncio.to_thread(
            self.ledger.is_valid, raw_refresh_token, payload.user_id
        )
        if not in_ledger:
            self.logger.info("refresh_rejected", reason="not_in_ledger", user_id=payload.user_id)
            raise AuthenticationError(_INVALID_REFRESH)
        user = await asyncio.to_thread(self.store.get_user, payload.user_id)
        if not user:
            raise NotFoundError("User not found")
        return self.codec.issue_access_token(user.id, user.email)
