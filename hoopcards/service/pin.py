from __future__ import annotations

import re
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from hoopcards.logging import get_logger
from hoopcards.service.errors import PinRequiredError, RateLimitedError, ValidationError
from hoopcards.service.rate_limit import RateLimiter
from hoopcards.storage.models import User

logger = get_logger(__name__)

PIN_PATTERN = re.compile(r"^\d{4,6}$")

SENSITIVE_OPERATIONS = {
    "DELETE_ACCOUNT": "delete_account",
    "CHANGE_PASSWORD": "change_password",
    "UPDATE_EMAIL": "update_email",
    "DELETE_COLLECTION": "delete_collection",
    "REMOVE_SECURITY_PIN": "remove_security_pin",
    "UPDATE_PAYMENT_METHODS": "update_payment_methods",
    "UPDATE_SHIPPING_ADDRESS": "update_shipping_address",
}

# Verified against when a user has no PIN so both paths cost one argon2 verify
_PLACEHOLDER_SECRET = "hoopcards-placeholder-pin"


class PinStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_pin_hash(self, user_id: str, pin_hash: Optional[str]) -> None: ...


class PinGate:
    """Optional second factor for sensitive account operations."""

    def __init__(
        self,
        store: PinStore,
        *,
        hasher: Optional[PasswordHasher] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher or PasswordHasher(type=Type.ID)
        self.rate_limiter = rate_limiter
        self._placeholder_hash = self.hasher.hash(_PLACEHOLDER_SECRET)

    @staticmethod
    def is_valid_format(pin: Optional[str]) -> bool:
        return bool(pin) and bool(PIN_PATTERN.match(pin))

    def has_pin(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        return bool(user and user.pin_hash)

    def verify_pin(self, user_id: str, provided_pin: Optional[str]) -> bool:
        """Check ``provided_pin`` against the stored hash.

        Exactly one argon2 verification runs on every path. A user without a PIN
        is checked against the placeholder hash and then reported as a mismatch,
        so response time does not reveal who has a PIN configured.
        """
        user = self.store.get_user(user_id)
        stored_hash = user.pin_hash if user else None
        try:
            matched = self.hasher.verify(stored_hash or self._placeholder_hash, provided_pin or "")
        except (VerificationError, InvalidHashError):
            matched = False
        return bool(matched) and stored_hash is not None

    def hash_pin(self, pin: str) -> str:
        return self.hasher.hash(pin)

    def set_pin(self, user_id: str, pin: str, confirm_pin: str) -> None:
        errors: dict[str, list[str]] = {}
        if not self.is_valid_format(pin):
            errors["pin"] = ["PIN must be 4 to 6 digits"]
        if pin != confirm_pin:
            errors["confirmPin"] = ["PINs don't match"]
        if errors:
            raise ValidationError("Invalid request data", errors=errors)
        self.store.set_pin_hash(user_id, self.hash_pin(pin))
        logger.info("security_pin_set", user_id=user_id)

    async def remove_pin(
        self,
        user_id: str,
        current_pin: Optional[str],
        *,
        acting_as_admin: bool = False,
        ip: Optional[str] = None,
    ) -> None:
        if not self.has_pin(user_id):
            raise ValidationError("No security PIN is set for this account")
        if not acting_as_admin:
            await self.require_pin(
                user_id, current_pin, SENSITIVE_OPERATIONS["REMOVE_SECURITY_PIN"], ip=ip
            )
        self.store.set_pin_hash(user_id, None)
        logger.info("security_pin_removed", user_id=user_id, by_admin=acting_as_admin)

    async def require_pin_if_set(
        self,
        user_id: str,
        provided_pin: Optional[str],
        operation: str = "this operation",
        *,
        ip: Optional[str] = None,
    ) -> None:
        """Pass through when no PIN is configured, otherwise demand a correct one.

        Raises ``PinRequiredError`` (403) when the PIN is missing or wrong.
        """
        await self._validate(user_id, provided_pin, operation, always_require=False, ip=ip)

    async def require_pin(
        self,
        user_id: str,
        provided_pin: Optional[str],
        operation: str = "this operation",
        *,
        ip: Optional[str] = None,
    ) -> None:
        """Like ``require_pin_if_set`` but a configured PIN is mandatory."""
        await self._validate(user_id, provided_pin, operation, always_require=True, ip=ip)

    async def _validate(
        self,
        user_id: str,
        provided_pin: Optional[str],
        operation: str,
        *,
        always_require: bool,
        ip: Optional[str],
    ) -> None:
        has_pin = self.has_pin(user_id)
        if not has_pin and not always_require:
            return
        if not provided_pin:
            raise PinRequiredError(
                f"Security PIN required for {operation}",
                errors={"pin": [f"Security PIN is required for {operation}"]},
            )
        if not has_pin:
            raise PinRequiredError(
                "Security PIN must be set up before performing this operation",
                errors={
                    "pin": [
                        "You must set up a security PIN before performing this operation"
                    ]
                },
            )
        if self.rate_limiter and ip and await self.rate_limiter.is_rate_limited(ip, "sensitive"):
            logger.warning("security_pin_rate_limited", user_id=user_id, operation=operation)
            raise RateLimitedError("Too many attempts. Please try again later.")
        if not self.verify_pin(user_id, provided_pin):
            if self.rate_limiter and ip:
                await self.rate_limiter.record_attempt(ip, "sensitive")
            logger.warning("security_pin_invalid", user_id=user_id, operation=operation)
            raise PinRequiredError(
                "Invalid security PIN",
                errors={"pin": ["The provided PIN is incorrect"]},
            )
