from __future__ import annotations

from typing import Optional

from sessionauth.logging import get_logger
from sessionauth.service.errors import AuthenticationError
from sessionauth.service.tokens import AccessTokenPayload, TokenCodec

logger = get_logger(__name__)


class AccessVerifier:
    """Turns an ``Authorization`` header into a verified access-token payload.

    Missing or malformed headers and expired tokens raise AuthenticationError
    (401); a bad signature or claim raises TokenInvalidError (403); a missing
    secret raises ConfigurationError (500).
    """

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> str:
        if not authorization:
            raise AuthenticationError("Authorization header missing or malformed")
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("Authorization header missing or malformed")
        return token.strip()

    def verify_header(self, authorization: Optional[str]) -> AccessTokenPayload:
        token = self.extract_bearer(authorization)
        return self.codec.verify_access_token(token)
