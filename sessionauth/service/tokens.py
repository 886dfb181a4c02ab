from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.errors import (
    ConfigurationError,
    TokenExpiredError,
    TokenInvalidError,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_RESET = "password_reset"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "": 1,
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}


def parse_duration(value: str) -> timedelta:
    """Parse ``"15m"``, ``"1h"``, ``"2d"`` or a bare number of seconds."""

    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"unrecognised duration: {value!r}")
    amount, unit = match.groups()
    seconds = int(amount) * _DURATION_UNITS[unit.lower()]
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


@dataclass(frozen=True)
class AccessTokenPayload:
    user_id: str
    email: str
    issued_at: int
    expires_at: int
    jti: str


@dataclass(frozen=True)
class RefreshTokenPayload:
    user_id: str
    issued_at: int
    expires_at: int
    jti: str


@dataclass(frozen=True)
class PasswordResetPayload:
    user_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Signs and verifies access, refresh and password-reset tokens.

    Tokens are compact HS256 JWS strings. Each kind is signed with its own
    secret and carries a ``typ`` claim, so a token of one kind never verifies
    as another. The codec holds no state besides its configuration.
    """

    def __init__(
        self,
        *,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        reset_secret: Optional[str],
        reset_ttl: Optional[str],
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secrets = {
            ACCESS: (access_secret, "JWT_SECRET"),
            REFRESH: (refresh_secret, "JWT_REFRESH_SECRET"),
            PASSWORD_RESET: (reset_secret, "PASSWORD_RESET_TOKEN_SECRET"),
        }
        self._reset_ttl_raw = reset_ttl
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.now = now

    @classmethod
    def from_settings(
        cls, settings: Settings, *, now: Callable[[], datetime] = _utcnow
    ) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            reset_secret=settings.password_reset_token_secret,
            reset_ttl=settings.password_reset_token_expires_in,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            now=now,
        )

    # issuing
    def issue_access_token(self, user_id: str, email: str) -> str:
        return self._issue(ACCESS, user_id, self.access_ttl, {"email": email})

    def issue_refresh_token(self, user_id: str) -> str:
        return self._issue(REFRESH, user_id, self.refresh_ttl, {})

    def issue_password_reset_token(
        self, user_id: str, ttl: Optional[timedelta] = None
    ) -> str:
        return self._issue(
            PASSWORD_RESET,
            user_id,
            ttl or self.reset_ttl,
            {"purpose": PASSWORD_RESET},
        )

    @property
    def reset_ttl(self) -> timedelta:
        if not self._reset_ttl_raw:
            raise ConfigurationError(
                "password reset token lifetime is not configured",
                detail={"setting": "PASSWORD_RESET_TOKEN_EXPIRES_IN"},
            )
        try:
            return parse_duration(self._reset_ttl_raw)
        except ValueError as exc:
            raise ConfigurationError(
                "password reset token lifetime is invalid",
                detail={"setting": "PASSWORD_RESET_TOKEN_EXPIRES_IN"},
            ) from exc

    # verifying
    def verify_access_token(self, token: str) -> AccessTokenPayload:
        claims = self._verify(ACCESS, token)
        email = claims.get("email")
        if not isinstance(email, str):
            raise TokenInvalidError("invalid token")
        return AccessTokenPayload(
            user_id=claims["sub"],
            email=email,
            issued_at=int(claims.get("iat", 0)),
            expires_at=int(claims["exp"]),
            jti=str(claims.get("jti", "")),
        )

    def verify_refresh_token(self, token: str) -> RefreshTokenPayload:
        claims = self._verify(REFRESH, token)
        return RefreshTokenPayload(
            user_id=claims["sub"],
            issued_at=int(claims.get("iat", 0)),
            expires_at=int(claims["exp"]),
            jti=str(claims.get("jti", "")),
        )

    def verify_password_reset_token(self, token: str) -> Optional[PasswordResetPayload]:
        """Return the bound user or None; failures are never distinguished.

        A missing secret still raises ConfigurationError since it is a
        deployment fault rather than a property of the presented token.
        """
        try:
            claims = self._verify(PASSWORD_RESET, token)
        except (TokenExpiredError, TokenInvalidError) as exc:
            logger.info("password_reset_token_rejected", reason=type(exc).__name__)
            return None
        if claims.get("purpose") != PASSWORD_RESET:
            logger.info("password_reset_token_rejected", reason="purpose_mismatch")
            return None
        return PasswordResetPayload(user_id=claims["sub"])

    # internals
    def _secret(self, kind: str) -> bytes:
        secret, env_name = self._secrets[kind]
        if not secret:
            logger.error("token_secret_missing", setting=env_name)
            raise ConfigurationError(
                "token signing is not configured", detail={"setting": env_name}
            )
        return secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, kind: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret(kind), signing_input.encode(), hashlib.sha256).digest()
        )

    def _issue(
        self, kind: str, user_id: str, ttl: timedelta, extra: dict[str, Any]
    ) -> str:
        issued = self.now()
        payload = {
            "sub": user_id,
            "typ": kind,
            "iat": int(issued.timestamp()),
            "exp": int((issued + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": self.audience,
            **extra,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def _verify(self, kind: str, token: str) -> dict[str, Any]:
        # missing secret is a configuration fault regardless of the token
        self._secret(kind)
        if not token or not isinstance(token, str):
            raise TokenInvalidError("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("invalid token")

        # Reject anything but HS256 so "none" or RS/HS confusion cannot apply
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=kind)
            raise TokenInvalidError("invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("invalid token")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(kind, signing_input), sig_b64):
            raise TokenInvalidError("invalid token")

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("invalid token")
        if not isinstance(claims, dict):
            raise TokenInvalidError("invalid token")

        if claims.get("iss") != self.issuer:
            raise TokenInvalidError("invalid token")
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or claims.get("typ") != kind:
            raise TokenInvalidError("invalid token")
        if not isinstance(claims.get("sub"), str) or not claims["sub"]:
            raise TokenInvalidError("invalid token")

        try:
            exp_ts = int(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("invalid token")
        if exp_ts <= int(self.now().timestamp()):
            raise TokenExpiredError("token expired")
        return claims


__all__ = [
    "AccessTokenPayload",
    "PasswordResetPayload",
    "RefreshTokenPayload",
    "TokenCodec",
    "parse_duration",
]
