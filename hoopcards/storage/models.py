from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentMethod:
    """Display metadata for a saved card. The card number is never stored."""

    id: str
    card_brand: str
    last4: str
    expiry_month: str
    expiry_year: str
    fingerprint: str
    nickname: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "cardBrand": self.card_brand,
            "last4": self.last4,
            "expiryMonth": self.expiry_month,
            "expiryYear": self.expiry_year,
            "nickname": self.nickname,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "USER"
    password_hash: Optional[str] = None
    pin_hash: Optional[str] = None
    email_verified: bool = False
    shipping_address: Optional[Dict[str, Any]] = None
    bio: Optional[str] = None
    payment_methods: List[PaymentMethod] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def has_pin(self) -> bool:
        return bool(self.pin_hash)

    def to_public(self) -> Dict[str, Any]:
        """Serializable view without password or PIN hashes."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "emailVerified": self.email_verified,
            "hasSecurityPin": self.has_pin,
            "shippingAddress": self.shipping_address,
            "bio": self.bio,
            "createdAt": self.created_at.isoformat(),
        }
