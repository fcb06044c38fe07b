from __future__ import annotations

import unicodedata
from typing import Any, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from wikiauth.service.permissions import Operation, Visibility

MAX_PASSWORD_LENGTH = 256
MAX_TOKEN_LENGTH = 1024
MAX_BIO_LENGTH = 2000

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "locked",
    "validation_error",
    "conflict",
    "server_error",
    "store_unavailable",
})


def _normalize_text(value: Optional[str]) -> Optional[str]:
    """NFKC-normalise display text and strip surrounding whitespace."""
    if value is None:
        return None
    return unicodedata.normalize("NFKC", value).strip()


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    access_level: int
    avatar: Optional[str] = None
    bio: Optional[str] = None
    created_at: Optional[str] = None
    email_confirmed: bool = False


class CSRFTokenResponse(BaseModel):
    csrf_token: str
    expires_in: int


class LoginRequest(BaseModel):
    email: str = Field(default="", max_length=320)
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    csrf_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LoginResponse(BaseModel):
    user: UserResponse
    expires_at: str


class RegisterRequest(BaseModel):
    # Fields default to empty so bot heuristics run before shape validation
    username: str = Field(default="", max_length=64)
    name: str = Field(default="", max_length=120)
    email: str = Field(default="", max_length=320)
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    csrf_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    turnstile_token: Optional[str] = Field(default=None, max_length=4096)
    hp_field: Optional[str] = None
    form_timestamp: Optional[Union[int, str]] = None

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_text(value) or ""


class MessageResponse(BaseModel):
    message: str


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    bio: Optional[str] = Field(default=None, max_length=MAX_BIO_LENGTH)
    avatar: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name", "bio")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_text(value)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(default="", max_length=320)


class ResetPasswordRequest(BaseModel):
    token: str = Field(default="", max_length=MAX_TOKEN_LENGTH)
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    csrf_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class AuthorizeRequest(BaseModel):
    operation: Operation
    resource_owner_id: Optional[str] = Field(default=None, max_length=64)
    visibility: Visibility = Visibility.PUBLIC


class AuthorizeResponse(BaseModel):
    granted: bool
    reason: str


class AdminCreateUserRequest(BaseModel):
    username: str = Field(default="", max_length=64)
    name: str = Field(default="", max_length=120)
    email: str = Field(default="", max_length=320)
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    role: str = Field(default="viewer", max_length=32)


class AdminUpdateUserRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    bio: Optional[str] = Field(default=None, max_length=MAX_BIO_LENGTH)
    role: Optional[str] = Field(default=None, max_length=32)
    email_confirmed: Optional[bool] = None
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("name", "bio")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_text(value)


class UserListResponse(BaseModel):
    items: List[UserResponse]
    total: int
