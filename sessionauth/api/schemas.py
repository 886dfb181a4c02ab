from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from sessionauth.logging import get_correlation_id
from sessionauth.service.auth import AuthResult, UserPublic

MAX_STRING_LENGTH = 4096

_VALID_ERROR_CODES = {
    "validation_error",
    "not_applicable",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
    "service_unavailable",
}


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request bodies keep every field optional so that a missing value is
# reported by the service layer as a 400 validation_error, not a 422.
class RegisterRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)
    full_name: Optional[str] = Field(default=None, max_length=256)


class LoginRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)


class RefreshTokenRequest(CamelModel):
    token: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class PasswordResetRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=320)


class PasswordResetConfirm(CamelModel):
    token: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    new_password: Optional[str] = Field(default=None, max_length=1024)


class UserResponse(CamelModel):
    id: str
    email: str
    full_name: str
    avatar_url: Optional[str] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_public(cls, user: UserPublic) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            avatar_url=user.avatar_url,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str


class AuthResponse(CamelModel):
    message: str
    user: UserResponse
    tokens: TokenPairResponse

    @classmethod
    def from_result(cls, message: str, result: AuthResult) -> "AuthResponse":
        return cls(
            message=message,
            user=UserResponse.from_public(result.user),
            tokens=TokenPairResponse(
                access_token=result.tokens.access_token,
                refresh_token=result.tokens.refresh_token,
            ),
        )


class AccessTokenResponse(CamelModel):
    access_token: str


class MessageResponse(CamelModel):
    message: str
