from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
}

MAX_ACCOUNT_LENGTH = 320
MAX_RESOURCE_LENGTH = 128


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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_account(value: str) -> str:
    normalized = (value or "").strip()
    if not normalized:
        raise ValueError("account is required")
    return normalized


class LoginRequest(BaseModel):
    account: str = Field(..., max_length=MAX_ACCOUNT_LENGTH)
    password: str = Field(..., max_length=1024)

    @field_validator("account")
    @classmethod
    def _normalize_account(cls, value: str) -> str:
        return _validate_account(value)


class SessionCreateRequest(BaseModel):
    claims: Dict[str, Any] = Field(default_factory=dict)


class ActivityRequest(BaseModel):
    actor_id: str = Field(default="anonymous", max_length=MAX_ACCOUNT_LENGTH)


class NavigationRequest(BaseModel):
    tab: str = Field(..., min_length=1, max_length=256)


class EventPublishRequest(BaseModel):
    payload: Any = None
    origin_actor_id: Optional[str] = Field(default=None, max_length=MAX_ACCOUNT_LENGTH)


class SessionResponse(BaseModel):
    session_id: str
    created_at: datetime
    expires_at: datetime
    claims: Dict[str, Any] = Field(default_factory=dict)


class LoginResponse(BaseModel):
    status: str
    account: str
    session: Optional[SessionResponse] = None


class LockoutResponse(BaseModel):
    account: str
    locked: bool
    attempts: int
    remaining_seconds: int


class SessionStatusResponse(BaseModel):
    valid: bool
    session: Optional[SessionResponse] = None


class AuditEntryResponse(BaseModel):
    id: Optional[str]
    action: str
    resource: str
    actor_id: str
    timestamp: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    origin: Dict[str, Any] = Field(default_factory=dict)


class AuditQueryResponse(BaseModel):
    items: List[AuditEntryResponse]
    total: int


class EventResponse(BaseModel):
    type: str
    payload: Any = None
    timestamp: datetime
    origin_actor_id: Optional[str] = None
