from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class UserContextResponse(BaseModel):
    id: str
    email: str
    user_type: str
    permissions: List[str] = Field(default_factory=list)
    token_id: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    token_id: str
    last_activity_at: datetime
    created_at: datetime


class MeResponse(BaseModel):
    user: UserContextResponse
    session: Optional[SessionResponse] = None
    rate_limit: Optional[dict] = None


class LogoutResponse(BaseModel):
    revoked: bool = True
    token_id: str


class RefreshResponse(BaseModel):
    token: str
    token_id: str
    expires_at: datetime
    revoked_token_id: str
