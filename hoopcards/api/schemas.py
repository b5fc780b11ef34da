from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    ValidationInfo,
    field_validator,
)

from hoopcards.service.tokens import ROLES

_STRONG_PASSWORD = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]+$"
)
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_CARD_NUMBER = re.compile(r"^\d{13,19}$")
_EXPIRY_MONTH = re.compile(r"^(0[1-9]|1[0-2])$")
_EXPIRY_YEAR = re.compile(r"^\d{2}$")


class Meta(BaseModel):
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    requestId: Optional[str] = None


class SuccessEnvelope(BaseModel):
    success: bool = True
    data: Optional[Any] = None
    message: Optional[str] = None
    meta: Meta = Field(default_factory=Meta)


class ErrorEnvelope(BaseModel):
    success: bool = False
    message: str
    errors: Optional[Dict[str, List[str]]] = None
    meta: Meta = Field(default_factory=Meta)


def field_errors(exc: PydanticValidationError) -> Dict[str, List[str]]:
    """Flatten pydantic errors into ``{field: [message, ...]}`` keyed by wire name."""
    flattened: Dict[str, List[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "_errors"
        message = str(error.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        flattened.setdefault(field, []).append(message)
    return flattened


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Invalid email address")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) < 5:
        raise ValueError("Email must be at least 5 characters long")
    if len(normalized) > 254:
        raise ValueError("Email must be less than 254 characters")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email address")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("Invalid email address")
    return normalized


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("Name is required")
    if len(cleaned) > 100:
        raise ValueError("Name must be less than 100 characters")
    for ch in cleaned:
        if ch.isalpha() or ch in " '-" or unicodedata.category(ch).startswith("M"):
            continue
        raise ValueError(
            "Name can only contain letters, spaces, hyphens, and apostrophes"
        )
    return cleaned


def _validate_strong_password(value: str, label: str) -> str:
    if len(value) < 12:
        raise ValueError(f"{label} must be at least 12 characters long")
    if len(value) > 128:
        raise ValueError(f"{label} must be less than 128 characters")
    if not _STRONG_PASSWORD.match(value):
        raise ValueError(
            f"{label} must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character (@$!%*?&)"
        )
    return value


def _confirm_matches(value: str, info: ValidationInfo, field: str) -> str:
    if field in info.data and value != info.data[field]:
        raise ValueError("Passwords don't match")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("Password must be at least 8 characters long")
        return value

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(..., min_length=1, max_length=256)
    password: str
    confirm_password: str = Field(..., alias="confirmPassword", min_length=1)

    @field_validator("password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_strong_password(value, "Password")

    @field_validator("confirm_password")
    @classmethod
    def _validate_confirmation(cls, value: str, info: ValidationInfo) -> str:
        return _confirm_matches(value, info, "password")


class ChangePasswordRequest(BaseModel):
    """Change password for the signed-in user (current password required)."""

    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword")
    confirm_password: str = Field(..., alias="confirmPassword", min_length=1)
    pin: Optional[str] = Field(default=None, max_length=6)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_strong_password(value, "New password")

    @field_validator("confirm_password")
    @classmethod
    def _validate_confirmation(cls, value: str, info: ValidationInfo) -> str:
        return _confirm_matches(value, info, "new_password")


class PinConfirmation(BaseModel):
    pin: Optional[str] = Field(default=None, max_length=6)


class SetSecurityPinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pin: str = Field(..., max_length=6)
    confirm_pin: str = Field(..., alias="confirmPin", max_length=6)
    current_pin: Optional[str] = Field(default=None, alias="currentPin", max_length=6)


class ShippingAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    street: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip_code: str = Field(..., alias="zipCode", min_length=5, max_length=20)
    country: str = Field(..., min_length=2, max_length=100)

    def to_storage(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)


class UpdateMeRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=500)
    pin: Optional[str] = Field(default=None, max_length=6)

    @field_validator("name")
    @classmethod
    def _validate_me_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_me_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=500)
    shipping_address: Optional[ShippingAddress] = Field(
        default=None, alias="shippingAddress"
    )
    pin: Optional[str] = Field(default=None, max_length=6)

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class AddPaymentMethodRequest(BaseModel):
    """Card details for a new saved payment method; the number is never stored."""

    model_config = ConfigDict(populate_by_name=True)

    card_number: str = Field(..., alias="cardNumber")
    expiry_month: str = Field(..., alias="expiryMonth")
    expiry_year: str = Field(..., alias="expiryYear")
    card_brand: str = Field(..., alias="cardBrand", min_length=1, max_length=32)
    nickname: Optional[str] = Field(default=None, max_length=50)
    pin: Optional[str] = Field(default=None, max_length=6)

    @field_validator("card_number")
    @classmethod
    def _validate_card_number(cls, value: str) -> str:
        digits = value.replace(" ", "")
        if not _CARD_NUMBER.match(digits):
            raise ValueError("Card number must be 13 to 19 digits")
        return digits

    @field_validator("expiry_month")
    @classmethod
    def _validate_expiry_month(cls, value: str) -> str:
        if not _EXPIRY_MONTH.match(value):
            raise ValueError("Invalid expiry month (must be 01-12)")
        return value

    @field_validator("expiry_year")
    @classmethod
    def _validate_expiry_year(cls, value: str) -> str:
        if not _EXPIRY_YEAR.match(value):
            raise ValueError("Invalid expiry year (must be 2 digits)")
        return value


class UpdateUserRoleRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in ROLES:
            raise ValueError(f"Role must be one of: {', '.join(ROLES)}")
        return normalized
