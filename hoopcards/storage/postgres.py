from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hoopcards.logging import get_logger
from hoopcards.storage.errors import ConstraintViolation
from hoopcards.storage.models import PaymentMethod, User

_UPDATABLE_COLUMNS = {
    "name": "name",
    "email": "email",
    "bio": "bio",
    "shipping_address": "shipping_address",
    "email_verified": "email_verified",
}

_USER_COLUMNS = (
    "id, email, name, role, password_hash, pin_hash, email_verified, "
    "shipping_address, bio, payment_methods, created_at, updated_at"
)


class PostgresStore:
    """User persistence backed by PostgreSQL through a psycopg pool."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    role TEXT NOT NULL DEFAULT 'USER',
                    password_hash TEXT,
                    pin_hash TEXT,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    shipping_address JSONB,
                    bio TEXT,
                    payment_methods JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _payment_from_row(data: Dict[str, Any]) -> PaymentMethod:
        created = data.get("created_at")
        return PaymentMethod(
            id=data["id"],
            card_brand=data["card_brand"],
            last4=data["last4"],
            expiry_month=data["expiry_month"],
            expiry_year=data["expiry_year"],
            fingerprint=data["fingerprint"],
            nickname=data.get("nickname"),
            created_at=datetime.fromisoformat(created) if created else datetime.now(timezone.utc),
        )

    @staticmethod
    def _payment_to_row(method: PaymentMethod) -> Dict[str, Any]:
        return {
            "id": method.id,
            "card_brand": method.card_brand,
            "last4": method.last4,
            "expiry_month": method.expiry_month,
            "expiry_year": method.expiry_year,
            "fingerprint": method.fingerprint,
            "nickname": method.nickname,
            "created_at": method.created_at.isoformat(),
        }

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        shipping = row.get("shipping_address")
        if isinstance(shipping, str):
            shipping = json.loads(shipping)
        methods = row.get("payment_methods") or []
        if isinstance(methods, str):
            methods = json.loads(methods)
        return User(
            id=row["id"],
            email=row["email"],
            name=row.get("name"),
            role=row.get("role") or "USER",
            password_hash=row.get("password_hash"),
            pin_hash=row.get("pin_hash"),
            email_verified=bool(row.get("email_verified")),
            shipping_address=shipping,
            bio=row.get("bio"),
            payment_methods=[self._payment_from_row(m) for m in methods],
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    def create_user(
        self,
        email: str,
        *,
        password_hash: str,
        name: Optional[str] = None,
        role: str = "USER",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, name, role, password_hash)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (user_id, email, name, role, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, *, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM app_user WHERE role = %s "
                    "ORDER BY created_at DESC LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM app_user ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = []
        params: List[Any] = []
        for name, value in fields.items():
            if name == "shipping_address":
                assignments.append("shipping_address = %s::jsonb")
                params.append(json.dumps(value) if value is not None else None)
            else:
                assignments.append(f"{_UPDATABLE_COLUMNS[name]} = %s")
                params.append(value)
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET {', '.join(assignments)}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET role = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def set_pin_hash(self, user_id: str, pin_hash: Optional[str]) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET pin_hash = %s, updated_at = now() WHERE id = %s",
                (pin_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for pin", {"user_id": user_id})

    def add_payment_method(self, user_id: str, method: PaymentMethod) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payment_methods FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not row:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            existing = row.get("payment_methods") or []
            if isinstance(existing, str):
                existing = json.loads(existing)
            if any(m.get("fingerprint") == method.fingerprint for m in existing):
                raise ConstraintViolation(
                    "This card is already saved to your account", {"field": "cardNumber"}
                )
            existing.append(self._payment_to_row(method))
            conn.execute(
                "UPDATE app_user SET payment_methods = %s::jsonb, updated_at = now() WHERE id = %s",
                (json.dumps(existing), user_id),
            )

    def remove_payment_method(self, user_id: str, method_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payment_methods FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not row:
                return False
            existing = row.get("payment_methods") or []
            if isinstance(existing, str):
                existing = json.loads(existing)
            remaining = [m for m in existing if m.get("id") != method_id]
            if len(remaining) == len(existing):
                return False
            conn.execute(
                "UPDATE app_user SET payment_methods = %s::jsonb, updated_at = now() WHERE id = %s",
                (json.dumps(remaining), user_id),
            )
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            deleted = cur.rowcount > 0
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted

    def close(self) -> None:
        self.pool.close()
