from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_correlation_id
from sessionguard.storage.models import SessionUser, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})

# Anything longer is rejected by the service anyway; bounds keep JSON bodies small
MAX_FIELD_LENGTH = 4096


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

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


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_max_length=MAX_FIELD_LENGTH)

    email: str
    password: str
    name: str


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_max_length=MAX_FIELD_LENGTH)

    email: str
    password: str


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(str_max_length=MAX_FIELD_LENGTH)

    current_password: str
    new_password: str


class UserResponse(BaseModel):
    id: str
    email: str
    email_verified: bool
    name: str
    picture: Optional[str] = None
    provider: str

    @classmethod
    def from_user(cls, user: User | SessionUser) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            email_verified=user.email_verified,
            name=user.name,
            picture=user.picture,
            provider=user.provider,
        )


class SessionResponse(BaseModel):
    expires_at: datetime
    last_active_at: Optional[datetime] = None


class MeResponse(BaseModel):
    user: UserResponse
    session: SessionResponse


class GoogleStartResponse(BaseModel):
    url: str
