"""Request and response models for the auth API."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def _normalise_email(value: str) -> str:
    return value.strip().lower()


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=255)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("email", mode="after")
    @classmethod
    def _clean_email(cls, value: str) -> str:
        return _normalise_email(value)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=255)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("email", mode="after")
    @classmethod
    def _clean_email(cls, value: str) -> str:
        return _normalise_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str | None = Field(default=None, alias="refreshToken", max_length=4096)

    model_config = ConfigDict(populate_by_name=True)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255, alias="currentPassword")
    new_password: str = Field(min_length=1, max_length=255, alias="newPassword")
    refresh_token: str | None = Field(default=None, alias="refreshToken", max_length=4096)

    model_config = ConfigDict(populate_by_name=True)


class TwoFactorSetupRequest(BaseModel):
    code: str = Field(min_length=6, max_length=16)
    secret: str = Field(min_length=16, max_length=128, pattern=r"^[A-Za-z2-7]+=*$")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("secret", mode="after")
    @classmethod
    def _upper_secret(cls, value: str) -> str:
        return value.upper()


class TwoFactorConfirmRequest(BaseModel):
    """Password plus TOTP code, required to disable 2FA or rotate codes."""

    password: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=6, max_length=16)

    model_config = ConfigDict(populate_by_name=True)


class TwoFactorLoginRequest(BaseModel):
    temp_token: str = Field(min_length=1, max_length=128, alias="tempToken")
    code: str = Field(min_length=6, max_length=32)

    model_config = ConfigDict(populate_by_name=True)


class UserResource(BaseModel):
    id: int
    email: str
    role: str

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    @field_validator("role", mode="before")
    @classmethod
    def _role_value(cls, value: object) -> str:
        return getattr(value, "value", value)  # type: ignore[return-value]


class UserDetailResource(UserResource):
    is_active: bool = Field(serialization_alias="isActive")
    email_verified: bool = Field(serialization_alias="emailVerified")
    two_factor_enabled: bool = Field(serialization_alias="twoFactorEnabled")
    created_at: datetime | None = Field(default=None, serialization_alias="createdAt")
    last_login_at: datetime | None = Field(default=None, serialization_alias="lastLoginAt")


def serialize_user(user: object) -> dict:
    return UserResource.model_validate(user).model_dump(by_alias=True, mode="json")


def serialize_user_detail(user: object) -> dict:
    return UserDetailResource.model_validate(user).model_dump(by_alias=True, mode="json")


__all__ = [
    "ChangePasswordRequest",
    "LoginRequest",
    "RefreshRequest",
    "RegisterRequest",
    "TwoFactorConfirmRequest",
    "TwoFactorLoginRequest",
    "TwoFactorSetupRequest",
    "UserDetailResource",
    "UserResource",
    "serialize_user",
    "serialize_user_detail",
]
