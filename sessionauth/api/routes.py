from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request
from fastapi.responses import RedirectResponse

from sessionauth.api.schemas import (
    AccessTokenResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshTokenRequest,
    RegisterRequest,
    UserResponse,
)
from sessionauth.logging import get_logger
from sessionauth.service.errors import ServiceError
from sessionauth.service.oauth import OAuthProviderError
from sessionauth.service.runtime import get_runtime
from sessionauth.service.tokens import AccessTokenPayload
from sessionauth.storage.errors import ConstraintViolation, StoreUnavailableError

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_COOKIE_PATH = "/api/auth/oauth"


def _ok(model) -> Envelope:
    return Envelope(status="ok", data=model.model_dump(by_alias=True, mode="json"))


async def require_access_token(
    request: Request, authorization: Optional[str] = Header(None)
) -> AccessTokenPayload:
    """Verify the bearer token and expose its payload as ``request.state.principal``."""
    runtime = get_runtime()
    principal = runtime.verifier.verify_header(authorization)
    request.state.principal = principal
    return principal


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    """Create a password account and return it with a fresh token pair.

    Raises:
        400: missing fields, malformed email or short password
        409: email already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(body.email, body.password, body.full_name)
    return _ok(AuthResponse.from_result("User registered successfully", result))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return _ok(AuthResponse.from_result("Login successful", result))


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: RefreshTokenRequest):
    """Exchange a refresh token for a new access token (no rotation)."""
    runtime = get_runtime()
    access_token = await runtime.auth.refresh_access_token(body.token)
    return _ok(AccessTokenResponse(access_token=access_token))


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return _ok(MessageResponse(message="Logged out successfully"))


@router.get("/me", response_model=Envelope)
async def me(principal: AccessTokenPayload = Depends(require_access_token)):
    runtime = get_runtime()
    user = await runtime.auth.get_current_user(principal)
    return _ok(UserResponse.from_public(user))


@router.post("/request-password-reset", response_model=Envelope)
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    message = await runtime.password_reset.request(body.email)
    return _ok(MessageResponse(message=message))


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.password_reset.redeem(body.token, body.new_password)
    return _ok(MessageResponse(message="Password has been reset successfully"))


def _oauth_failure_redirect(reason: str) -> RedirectResponse:
    runtime = get_runtime()
    query = urlencode({"error": "oauth_failed", "message": reason})
    response = RedirectResponse(
        f"{runtime.settings.frontend_url}/login?{query}", status_code=302
    )
    response.delete_cookie(OAUTH_STATE_COOKIE, path=OAUTH_COOKIE_PATH)
    return response


@router.get("/oauth/start")
async def oauth_start():
    runtime = get_runtime()
    try:
        state, cookie_value = runtime.oauth_state.new_state()
        url = runtime.oauth.authorization_url(state)
    except ServiceError as exc:
        logger.error("oauth_start_failed", error_code=exc.error_code, message=exc.message)
        return _oauth_failure_redirect("not_configured")
    response = RedirectResponse(url, status_code=302)
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        cookie_value,
        max_age=runtime.oauth_state.ttl_seconds,
        httponly=True,
        secure=runtime.settings.api_base_url.startswith("https://"),
        samesite="lax",
        path=OAUTH_COOKIE_PATH,
    )
    return response


@router.get("/oauth/callback")
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    oauth_state: Optional[str] = Cookie(None),
):
    """Finish the Google flow and hand the token pair to the frontend."""
    runtime = get_runtime()
    if error:
        logger.warning("oauth_provider_denied", provider=runtime.oauth.name, error=error)
        return _oauth_failure_redirect("provider_denied")
    try:
        if not runtime.oauth_state.verify(oauth_state, state):
            logger.warning("oauth_state_mismatch", provider=runtime.oauth.name)
            return _oauth_failure_redirect("invalid_state")
        provider_tokens = await runtime.oauth.exchange_code(code or "")
        profile = await runtime.oauth.fetch_profile(provider_tokens)
        user = await runtime.identity.resolve(profile.to_identity(runtime.oauth.name))
        tokens = await asyncio.to_thread(runtime.auth.issue_token_pair, user)
    except OAuthProviderError as exc:
        return _oauth_failure_redirect(exc.code)
    except ServiceError as exc:
        logger.error("oauth_callback_failed", error_code=exc.error_code, message=exc.message)
        return _oauth_failure_redirect(exc.error_code)
    except StoreUnavailableError:
        logger.error("oauth_callback_failed", error_code="service_unavailable")
        return _oauth_failure_redirect("service_unavailable")
    except ConstraintViolation as exc:
        logger.error("oauth_callback_failed", error_code="conflict", detail=exc.detail)
        return _oauth_failure_redirect("conflict")
    except Exception:
        logger.exception("oauth_callback_unexpected_error", provider=runtime.oauth.name)
        return _oauth_failure_redirect("user_processing_error")

    logger.info("oauth_login_succeeded", provider=runtime.oauth.name, user_id=user.id)
    query = urlencode(
        {"access_token": tokens.access_token, "refresh_token": tokens.refresh_token}
    )
    response = RedirectResponse(
        f"{runtime.settings.frontend_url}/oauth-callback?{query}", status_code=302
    )
    response.delete_cookie(OAUTH_STATE_COOKIE, path=OAUTH_COOKIE_PATH)
    return response
