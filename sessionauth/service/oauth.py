from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from sessionauth.logging import get_logger
from sessionauth.service.errors import ConfigurationError
from sessionauth.service.identity import ProviderIdentity

logger = get_logger(__name__)

GOOGLE = {
    "name": "google",
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}

STATE_TTL_SECONDS = 600


class OAuthProviderError(Exception):
    """The provider rejected the exchange or returned something unusable.

    ``code`` is a short machine-readable reason suitable for a redirect query.
    """

    def __init__(self, message: str, *, code: str = "provider_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass(frozen=True)
class ProviderProfile:
    provider_user_id: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

    def to_identity(self, provider_name: str) -> ProviderIdentity:
        return ProviderIdentity(
            provider_name=provider_name,
            provider_user_id=self.provider_user_id,
            email=self.email,
            full_name=self.full_name,
            avatar_url=self.avatar_url,
        )


class GoogleOAuthProvider:
    """Authorization-code flow against Google, via httpx."""

    name = GOOGLE["name"]

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._transport = transport
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _require_configured(self) -> None:
        if not self.is_configured:
            logger.warning("oauth_not_configured", provider=self.name)
            raise ConfigurationError(
                "Google OAuth is not configured",
                detail={"setting": "GOOGLE_CLIENT_ID"},
            )

    def authorization_url(self, state: str) -> str:
        self._require_configured()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE['auth_url']}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=False, transport=self._transport
        )

    async def exchange_code(self, code: str) -> dict[str, Any]:
        self._require_configured()
        if not code:
            raise OAuthProviderError("authorization code missing", code="missing_code")
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    GOOGLE["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                tokens = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise OAuthProviderError("code exchange rejected", code="exchange_failed") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_error", provider=self.name, error=str(exc))
            raise OAuthProviderError("provider unreachable", code="provider_unreachable") from exc
        except ValueError as exc:
            logger.error("oauth_token_parse_error", provider=self.name, error=str(exc))
            raise OAuthProviderError("malformed token response", code="exchange_failed") from exc

        if not isinstance(tokens, dict) or not tokens.get("access_token"):
            logger.error("oauth_no_access_token", provider=self.name)
            raise OAuthProviderError("no access token returned", code="exchange_failed")
        return tokens

    async def fetch_profile(self, tokens: dict[str, Any]) -> ProviderProfile:
        access_token = tokens.get("access_token") if isinstance(tokens, dict) else None
        if not access_token:
            raise OAuthProviderError("no access token", code="exchange_failed")
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                userinfo = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_userinfo_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise OAuthProviderError("profile request rejected", code="profile_failed") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_userinfo_error", provider=self.name, error=str(exc))
            raise OAuthProviderError("provider unreachable", code="provider_unreachable") from exc
        except ValueError as exc:
            logger.error("oauth_userinfo_parse_error", provider=self.name, error=str(exc))
            raise OAuthProviderError("malformed profile", code="profile_failed") from exc

        if not isinstance(userinfo, dict):
            raise OAuthProviderError("malformed profile", code="profile_failed")
        provider_user_id = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        if not provider_user_id:
            logger.error("oauth_identity_missing_uid", provider=self.name)
            raise OAuthProviderError("profile has no id", code="profile_incomplete")
        if not email:
            logger.error("oauth_identity_missing_email", provider=self.name)
            raise OAuthProviderError("profile has no email", code="profile_incomplete")
        return ProviderProfile(
            provider_user_id=str(provider_user_id),
            email=str(email),
            full_name=userinfo.get("name"),
            avatar_url=userinfo.get("picture"),
        )


class OAuthStateSigner:
    """Signs the anti-CSRF ``state`` value kept in a short-lived cookie."""

    def __init__(
        self, secret: Optional[str], *, ttl_seconds: int = STATE_TTL_SECONDS
    ) -> None:
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def _key(self) -> bytes:
        if not self._secret:
            raise ConfigurationError(
                "token signing is not configured", detail={"setting": "JWT_SECRET"}
            )
        return self._secret.encode()

    def _mac(self, state: str, expires: int) -> str:
        return hmac.new(
            self._key(), f"oauth-state:{state}:{expires}".encode(), hashlib.sha256
        ).hexdigest()

    def new_state(self) -> tuple[str, str]:
        """Return ``(state, cookie_value)``."""
        state = secrets.token_urlsafe(24)
        expires = int(time.time()) + self.ttl_seconds
        return state, f"{state}.{expires}.{self._mac(state, expires)}"

    def verify(self, cookie_value: Optional[str], state: Optional[str]) -> bool:
        if not cookie_value or not state:
            return False
        try:
            cookie_state, expires_raw, mac = cookie_value.rsplit(".", 2)
            expires = int(expires_raw)
        except ValueError:
            return False
        if expires < int(time.time()):
            return False
        if not hmac.compare_digest(cookie_state, state):
            return False
        return hmac.compare_digest(self._mac(cookie_state, expires), mac)
