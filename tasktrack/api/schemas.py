from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tasktrack.service.validation import (
    NAME_MAX_LENGTH,
    PASSWORD_MAX_LENGTH,
    normalize_email,
    validate_name,
    validate_password,
    validate_username,
)
from tasktrack.storage.models import Role, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "account_inactive",
    "account_locked",
    "missing_token",
    "invalid_token",
    "token_already_rotated",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


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
    """API envelope format shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    first_name: Optional[str] = Field(default=None, max_length=NAME_MAX_LENGTH + 16)
    last_name: Optional[str] = Field(default=None, max_length=NAME_MAX_LENGTH + 16)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return validate_name(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return normalize_email(value)


class RefreshTokenRequest(BaseModel):
    # Browsers send the cookie instead; the body field serves other clients
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(id=role.id, name=role.name, description=role.description)


class UserResponse(BaseModel):
    """Client-facing user; lockout counters are never exposed."""

    id: str
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None
    is_active: bool = True
    role_ids: List[str] = Field(default_factory=list)
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            avatar=user.avatar,
            is_active=user.is_active,
            role_ids=list(user.role_ids),
            last_login=user.last_login,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    access_expires_at: datetime
    token_type: str = "bearer"
    # None when the refresh answered from the grace window without rotating
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


class ProfileResponse(BaseModel):
    user: UserResponse
    roles: List[RoleResponse] = Field(default_factory=list)
