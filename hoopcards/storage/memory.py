from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from hoopcards.logging import get_logger
from hoopcards.storage.errors import ConstraintViolation
from hoopcards.storage.models import PaymentMethod, User

_UPDATABLE_FIELDS = frozenset(
    {"name", "email", "bio", "shipping_address", "email_verified"}
)


class MemoryStore:
    """In-memory user store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            existing.email == email and existing.id != exclude_id
            for existing in self.users.values()
        )

    def create_user(
        self,
        email: str,
        *,
        password_hash: str,
        name: Optional[str] = None,
        role: str = "USER",
    ) -> User:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=role,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, payment_methods=list(user.payment_methods)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return self.get_user(user.id) if user else None

    def list_users(self, *, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [
                replace(u) for u in self.users.values() if not role or u.role == role
            ]
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            email = fields.get("email")
            if email and self._email_taken(email, exclude_id=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = datetime.now(timezone.utc)
            return self.get_user(user_id)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = datetime.now(timezone.utc)
            return self.get_user(user_id)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            user.updated_at = datetime.now(timezone.utc)

    def set_pin_hash(self, user_id: str, pin_hash: Optional[str]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for pin", {"user_id": user_id})
            user.pin_hash = pin_hash
            user.updated_at = datetime.now(timezone.utc)

    def add_payment_method(self, user_id: str, method: PaymentMethod) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if any(m.fingerprint == method.fingerprint for m in user.payment_methods):
                raise ConstraintViolation(
                    "This card is already saved to your account", {"field": "cardNumber"}
                )
            user.payment_methods.append(method)

    def remove_payment_method(self, user_id: str, method_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            before = len(user.payment_methods)
            user.payment_methods = [m for m in user.payment_methods if m.id != method_id]
            return len(user.payment_methods) != before

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed:
                self.logger.info("user_deleted", user_id=user_id)
            return removed is not None
