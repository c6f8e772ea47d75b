from __future__ import annotations

import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pggarden.logging import get_correlation_id
from pggarden.service.errors import IDENTITY_ERROR_CODES

MAX_PASSWORD_LENGTH = 1024
MAX_EMAIL_LENGTH = 254
MAX_TOKEN_LENGTH = 256

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
}) | IDENTITY_ERROR_CODES


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    # Zero-width characters could be used to spoof a lookalike identifier
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterRequest(_CamelModel):
    username: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username", "email")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class LoginRequest(_CamelModel):
    """``id`` is a username or an email address."""

    id: str = Field(..., min_length=1, max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("id")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class ForgotPasswordRequest(_CamelModel):
    email: str = Field(..., min_length=3, max_length=MAX_EMAIL_LENGTH)


class ResetPasswordRequest(_CamelModel):
    user_id: str = Field(..., alias="userId", max_length=64)
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class ChangePasswordRequest(_CamelModel):
    old_password: str = Field(..., alias="oldPassword", max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., alias="newPassword", max_length=MAX_PASSWORD_LENGTH)


class VerifyEmailRequest(_CamelModel):
    email_id: str = Field(..., alias="emailId", max_length=64)
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class EmailIdRequest(_CamelModel):
    email_id: str = Field(..., alias="emailId", max_length=64)


class AddEmailRequest(_CamelModel):
    email: str = Field(..., min_length=3, max_length=MAX_EMAIL_LENGTH)


class SuccessResponse(BaseModel):
    success: bool
