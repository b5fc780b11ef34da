from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from hoopcards.config import Settings
from hoopcards.logging import get_logger
from hoopcards.service.cookies import SessionTokens
from hoopcards.service.csrf import CSRFGuard
from hoopcards.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from hoopcards.service.security import generate_token_hex
from hoopcards.service.tokens import TokenClaim, TokenService
from hoopcards.storage.common import KeyValueCache
from hoopcards.storage.errors import ConstraintViolation
from hoopcards.storage.models import User

logger = get_logger(__name__)

PASSWORD_RESET_TTL_SECONDS = 60 * 60
EMAIL_VERIFICATION_TTL_SECONDS = 60 * 60

_REVOKED_PREFIX = "refresh_revoked:"
_RESET_PREFIX = "reset:"
_VERIFY_PREFIX = "verify:"

# Verified against when the account does not exist so both login paths cost one argon2 verify
_PLACEHOLDER_PASSWORD = "hoopcards-placeholder-password"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        password_hash: str,
        name: Optional[str] = None,
        role: str = "USER",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def list_users(self, *, role: Optional[str] = None, limit: int = 100) -> List[User]: ...

    def delete_user(self, user_id: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    claim: TokenClaim


class RefreshRejected(AuthenticationError):
    """Refresh token invalid, expired, or revoked (401)."""
    error_code = "refresh_invalid"


class RefreshUserMissing(AuthenticationError):
    """Refresh token is valid but its user no longer exists (401)."""
    error_code = "refresh_user_not_found"


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


class AuthService:
    """Credential checks and the token lifecycle.

    Access tokens are stateless. Refresh tokens are stateless plus a denylist
    keyed by ``jti`` in the shared cache: logout, rotation and password changes
    revoke the presented refresh token for the rest of its lifetime.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: KeyValueCache,
        settings: Settings,
        *,
        tokens: Optional[TokenService] = None,
        csrf: Optional[CSRFGuard] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens or TokenService(settings)
        self.csrf = csrf or CSRFGuard(settings)
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._placeholder_hash = self._pwd_hasher.hash(_PLACEHOLDER_PASSWORD)
        self.logger = logger

    # passwords

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: Optional[User], password: str) -> bool:
        """Check ``password`` for ``user``; a missing user still costs one verify."""
        stored_hash = user.password_hash if user else None
        try:
            matched = self._pwd_hasher.verify(
                stored_hash or self._placeholder_hash, password or ""
            )
        except (VerificationError, InvalidHashError):
            matched = False
        if matched and stored_hash and self._pwd_hasher.check_needs_rehash(stored_hash):
            self.store.set_password_hash(user.id, self.hash_password(password))
        return bool(matched) and stored_hash is not None

    # accounts

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email.strip().lower())

    async def register(
        self, email: str, password: str, name: Optional[str] = None
    ) -> User:
        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized):
            raise ConflictError("User already exists")
        try:
            user = self.store.create_user(
                normalized,
                password_hash=self.hash_password(password),
                name=name.strip() if name else None,
            )
        except ConstraintViolation:
            raise ConflictError("User already exists")
        self.logger.info("user_registered", user_id=user.id)
        return user

    def authenticate(self, email: str, password: str) -> Tuple[Optional[User], bool]:
        """Return ``(user, password_ok)``; ``user`` is None for unknown emails."""
        user = self.find_user_by_email(email)
        return user, self.verify_password(user, password)

    # tokens

    def issue_session_tokens(self, user: User) -> SessionTokens:
        return SessionTokens(
            access_token=self.tokens.issue_access_token(user.id, user.role),
            refresh_token=self.tokens.issue_refresh_token(user.id, user.role),
            csrf_token=self.csrf.generate_token(),
        )

    def authenticate_access_token(self, token: Optional[str]) -> Optional[AuthContext]:
        claim = self.tokens.verify_access_token(token)
        if not claim:
            return None
        return AuthContext(user_id=claim.user_id, role=claim.role, claim=claim)

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[User, SessionTokens]:
        """Exchange a refresh token for a new token set and rotate it.

        Raises ``RefreshRejected`` for invalid, expired or revoked tokens and
        ``RefreshUserMissing`` when the user was deleted since issuance.
        """
        claim = self.tokens.verify_refresh_token(refresh_token)
        if not claim or await self.is_refresh_revoked(claim.jti):
            raise RefreshRejected("Invalid or expired refresh token")
        user = self.store.get_user(claim.user_id)
        if not user:
            raise RefreshUserMissing("User not found")
        await self.revoke_refresh_claim(claim)
        # Role comes from the store so promotions and demotions apply on refresh
        return user, self.issue_session_tokens(user)

    async def logout(self, refresh_token: Optional[str]) -> None:
        claim = self.tokens.verify_refresh_token(refresh_token)
        if claim:
            await self.revoke_refresh_claim(claim)

    async def revoke_refresh_claim(self, claim: TokenClaim) -> None:
        ttl = self.tokens.remaining_lifetime(claim)
        if ttl <= 0:
            return
        await self.cache.set(f"{_REVOKED_PREFIX}{claim.jti}", claim.user_id, ttl_seconds=ttl)
        self.logger.info("refresh_token_revoked", user_id=claim.user_id, jti=claim.jti)

    async def is_refresh_revoked(self, jti: str) -> bool:
        try:
            return await self.cache.exists(f"{_REVOKED_PREFIX}{jti}")
        except Exception as exc:
            # Unknown revocation state is treated as revoked
            self.logger.warning(
                "check_revoked_refresh_token_failed_defaulting_to_revoked",
                jti=jti,
                error=str(exc),
            )
            return True

    # password changes

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        refresh_token: Optional[str] = None,
    ) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not self.verify_password(user, current_password):
            raise ValidationError(
                "Current password is incorrect", error_code="invalid_current_password"
            )
        if self.verify_password(user, new_password):
            raise ValidationError(
                "New password must be different from current password",
                error_code="password_reused",
            )
        self.store.set_password_hash(user.id, self.hash_password(new_password))
        await self.logout(refresh_token)
        self.logger.info("password_changed", user_id=user.id)
        return user

    async def initiate_password_reset(self, email: str) -> Optional[str]:
        """Store a one-hour reset token for ``email``; None when no account matches."""
        user = self.find_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
            return None
        token = generate_token_hex(32)
        await self.cache.set(
            f"{_RESET_PREFIX}{token}", user.id, ttl_seconds=PASSWORD_RESET_TTL_SECONDS
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def peek_password_reset(self, token: str) -> Optional[User]:
        user_id = await self.cache.get(f"{_RESET_PREFIX}{token}")
        return self.store.get_user(user_id) if user_id else None

    async def complete_password_reset(self, token: str, new_password: str) -> User:
        user = await self.peek_password_reset(token)
        if not user:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise ValidationError(
                "Invalid or expired reset token", error_code="invalid_reset_token"
            )
        if self.verify_password(user, new_password):
            raise ValidationError(
                "New password must be different from your current password",
                error_code="password_reused",
            )
        # Consume before writing so a replayed token cannot reset twice
        if not await self.cache.pop(f"{_RESET_PREFIX}{token}"):
            raise ValidationError(
                "Invalid or expired reset token", error_code="invalid_reset_token"
            )
        self.store.set_password_hash(user.id, self.hash_password(new_password))
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    # email verification

    async def request_email_verification(self, user: User) -> str:
        token = generate_token_hex(32)
        await self.cache.set(
            f"{_VERIFY_PREFIX}{token}", user.id, ttl_seconds=EMAIL_VERIFICATION_TTL_SECONDS
        )
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def complete_email_verification(self, token: str) -> Optional[User]:
        user_id = await self.cache.pop(f"{_VERIFY_PREFIX}{token}")
        if not user_id:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            return None
        user = self.store.update_user(user_id, email_verified=True)
        if not user:
            self.logger.warning("email_verification_missing_user", user_id=user_id)
            return None
        self.logger.info("email_verified", user_id=user.id)
        return user

    # administration

    def list_users(self, *, role: Optional[str] = None, limit: int = 100) -> List[User]:
        return self.store.list_users(role=role, limit=limit)

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        user = self.store.update_user_role(user_id, role)
        if user:
            self.logger.info("user_role_updated", user_id=user_id, role=role)
        return user

    def delete_user(self, user_id: str) -> bool:
        return self.store.delete_user(user_id)
