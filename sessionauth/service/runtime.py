from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionauth.config import get_settings, reset_settings_cache
from sessionauth.logging import get_logger
from sessionauth.service.access import AccessVerifier
from sessionauth.service.auth import AuthService, PasswordHashing
from sessionauth.service.email import EmailService
from sessionauth.service.errors import ConfigurationError
from sessionauth.service.identity import IdentityResolver
from sessionauth.service.ledger import RefreshTokenLedger
from sessionauth.service.oauth import GoogleOAuthProvider, OAuthStateSigner
from sessionauth.service.password_reset import PasswordResetFlow
from sessionauth.service.tokens import TokenCodec
from sessionauth.storage.memory import MemoryStore
from sessionauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a DSN so it can be logged."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.codec = TokenCodec.from_settings(self.settings)
        self._check_token_settings()
        self.ledger = RefreshTokenLedger(self.store)
        self.hasher = PasswordHashing(time_cost=self.settings.password_hash_time_cost)
        self.auth = AuthService(
            self.store,
            self.codec,
            self.ledger,
            hasher=self.hasher,
            allow_signup=self.settings.allow_signup,
        )
        self.coordinator = self.auth.coordinator
        self.identity = IdentityResolver(self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.password_reset = PasswordResetFlow(
            self.store,
            self.codec,
            self.ledger,
            self.email,
            frontend_url=self.settings.frontend_url,
            hasher=self.hasher,
        )
        self.verifier = AccessVerifier(self.codec)
        self.oauth = GoogleOAuthProvider(
            self.settings.oauth_google_client_id,
            self.settings.oauth_google_client_secret,
            self.settings.oauth_callback_uri,
        )
        self.oauth_state = OAuthStateSigner(self.settings.jwt_secret)
        logger.info("runtime_init_completed", store_type=store_type)

    def _check_token_settings(self) -> None:
        """Refuse to start without every signing secret and a usable reset TTL."""
        missing = self.settings.missing_secrets()
        if missing:
            logger.error("token_settings_missing", settings=missing)
            self.close()
            raise ConfigurationError(
                "token signing is not configured", detail={"settings": missing}
            )
        try:
            reset_ttl = self.codec.reset_ttl
        except ConfigurationError:
            logger.error(
                "token_settings_invalid", setting="PASSWORD_RESET_TOKEN_EXPIRES_IN"
            )
            self.close()
            raise
        logger.info("token_settings_loaded", reset_ttl_seconds=int(reset_ttl.total_seconds()))

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()
            logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked fast path returns an existing
    runtime, the locked slow path prevents two threads creating one each.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
            runtime = None
        runtime = Runtime()
        return runtime
