from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from blogauth.logging import get_correlation_id
from blogauth.storage.models import Account, AuditEntry

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "account_locked",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error payload with a stable, machine-readable code."""

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
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


# -- input normalization -----------------------------------------------------

_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi-override characters, then NFKC-normalize."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or any(len(lbl) > 63 or not _EMAIL_DOMAIN_LABEL.match(lbl) for lbl in labels):
        raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if not 3 <= len(value) <= 50:
        raise ValueError("username must be 3-50 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may contain only letters, digits, '.', '_' and '-'")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# -- requests ------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str
    email: str
    password: str
    full_name: Optional[str] = Field(default=None, max_length=120)
    address: Optional[str] = Field(default=None, max_length=255)
    gender: Optional[Literal["male", "female", "other"]] = None
    captcha_token: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    captcha_token: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyLoginLinkRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    action: Literal["approve", "reject"]


class ForgotPasswordRequest(BaseModel):
    email: str
    captcha_token: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LockAccountRequest(BaseModel):
    locked_until: datetime
    lock_reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("locked_until")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# -- responses -----------------------------------------------------------------


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    role_id: int
    role: str
    full_name: Optional[str] = None
    address: Optional[str] = None
    gender: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    lock_reason: Optional[str] = None
    locked_by: Optional[int] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            role_id=account.role_id,
            role=account.role_name,
            full_name=account.full_name,
            address=account.address,
            gender=account.gender,
            locked_at=account.locked_at,
            locked_until=account.locked_until,
            lock_reason=account.lock_reason,
            locked_by=account.locked_by,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
        )


class PublicProfileResponse(BaseModel):
    id: int
    username: str
    full_name: Optional[str] = None
    role: str
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "PublicProfileResponse":
        return cls(
            id=account.id,
            username=account.username,
            full_name=account.full_name,
            role=account.role_name,
            created_at=account.created_at,
        )


class RegisterResponse(BaseModel):
    user: UserResponse


class LoginSuccessResponse(BaseModel):
    requires_verification: Literal[False] = False
    user: UserResponse


class LoginPendingResponse(BaseModel):
    requires_verification: Literal[True] = True
    user_id: int
    message: str
    expires_at: datetime


# Tagged on ``requires_verification``
LoginResponse = Union[LoginSuccessResponse, LoginPendingResponse]


class VerificationApprovedResponse(BaseModel):
    approved: Literal[True] = True
    user: UserResponse


class VerificationRejectedResponse(BaseModel):
    approved: Literal[False] = False
    message: str


class RefreshResponse(BaseModel):
    success: bool = True
    expires_in: int


class AuditEntryResponse(BaseModel):
    id: Optional[int]
    created_at: datetime
    action: str
    status: str
    account_id: Optional[int] = None
    username: Optional[str] = None
    ip_addr: Optional[str] = None
    masked_ip: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    details: dict = Field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            created_at=entry.created_at,
            action=entry.action,
            status=entry.status,
            account_id=entry.account_id,
            username=entry.username,
            ip_addr=entry.ip_addr,
            masked_ip=entry.masked_ip,
            browser=entry.browser,
            os=entry.os,
            details=entry.details or {},
        )
