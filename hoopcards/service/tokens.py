from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from hoopcards.config import Settings
from hoopcards.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"

ROLES = ("USER", "SELLER", "ADMIN")

MAX_TOKEN_LENGTH = 8192


@dataclass(frozen=True)
class TokenClaim:
    user_id: str
    role: str
    issued_at: int
    expires_at: int
    jti: str
    token_type: str


class TokenService:
    """Mint and verify HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets. Verification
    never raises: a malformed, mis-signed, expired or wrong-type token all come
    back as ``None`` so callers cannot tell the failure modes apart.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings.require_signing_secrets()
        self.settings = settings
        self._access_key = settings.jwt_secret.encode()
        self._refresh_key = settings.jwt_refresh_secret.encode()
        self._clock = clock
        self._leeway = settings.jwt_leeway_seconds

    def now(self) -> int:
        return int(self._clock())

    def issue_access_token(self, user_id: str, role: str) -> str:
        return self._issue(
            user_id,
            role,
            TOKEN_TYPE_ACCESS,
            self.settings.access_token_ttl_seconds,
            self._access_key,
        )

    def issue_refresh_token(self, user_id: str, role: str) -> str:
        return self._issue(
            user_id,
            role,
            TOKEN_TYPE_REFRESH,
            self.settings.refresh_token_ttl_seconds,
            self._refresh_key,
        )

    def verify_access_token(self, token: Optional[str]) -> Optional[TokenClaim]:
        return self._verify(token, TOKEN_TYPE_ACCESS, self._access_key)

    def verify_refresh_token(self, token: Optional[str]) -> Optional[TokenClaim]:
        return self._verify(token, TOKEN_TYPE_REFRESH, self._refresh_key)

    def remaining_lifetime(self, claim: TokenClaim) -> int:
        return max(claim.expires_at - self.now(), 0)

    def _issue(
        self, user_id: str, role: str, token_type: str, ttl_seconds: int, key: bytes
    ) -> str:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        issued_at = self.now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "role": role,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + ttl_seconds,
        }
        return self._encode_jwt(payload, key)

    def _verify(
        self, token: Optional[str], token_type: str, key: bytes
    ) -> Optional[TokenClaim]:
        if not token or not isinstance(token, str):
            return None
        payload = self._decode_jwt(token, key)
        if not payload:
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        sub = payload.get("sub")
        role = payload.get("role")
        jti = payload.get("jti")
        if not isinstance(sub, str) or not sub or role not in ROLES:
            return None
        if not isinstance(jti, str) or not jti:
            return None
        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if expires_at <= self.now() - self._leeway:
            return None
        return TokenClaim(
            user_id=sub,
            role=role,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=jti,
            token_type=token_type,
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: bytes) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, key)}"

    def _decode_jwt(self, token: str, key: bytes) -> Optional[dict[str, Any]]:
        if len(token) > MAX_TOKEN_LENGTH:
            logger.warning("jwt_too_long", length=len(token))
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 so "none" or asymmetric headers cannot be smuggled in
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError, RecursionError):
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload


def extract_access_token(
    cookies: Mapping[str, str], authorization: Optional[str]
) -> Optional[str]:
    """Cookie first, then ``Authorization: Bearer <token>``."""
    cookie_token = cookies.get(ACCESS_TOKEN_COOKIE)
    if cookie_token:
        return cookie_token
    return extract_bearer(authorization)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
