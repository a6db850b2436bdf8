from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code`` value."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ViewPayload(BaseModel):
    view: str
    context: Dict[str, Any] = Field(default_factory=dict)
    flash: Dict[str, str] = Field(default_factory=dict)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.lower()


class SecondFactorRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    totp: str = Field(..., min_length=1, max_length=16)


class HealthResponse(BaseModel):
    status: str
    store: str
    redis: bool
