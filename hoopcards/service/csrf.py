from __future__ import annotations

from typing import Iterable, Optional

from starlette.requests import Request
from starlette.responses import Response

from hoopcards.config import Settings
from hoopcards.logging import get_logger
from hoopcards.service.security import constant_time_equals, generate_token_hex
from hoopcards.service.tokens import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE

logger = get_logger(__name__)

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "x-csrf-token"

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# Endpoints that hand out the first token cannot demand one
CSRF_EXEMPT_PATHS = frozenset(
    {
        "/api/auth/login",
        "/api/auth/register",
        "/api/auth/forgot-password",
        "/api/auth/reset-password",
        "/api/auth/refresh",
    }
)
CSRF_EXEMPT_PREFIXES = ("/api/auth/verify-email/",)


class CSRFGuard:
    """Double-submit cookie protection for state-changing requests."""

    def __init__(
        self,
        settings: Settings,
        *,
        exempt_paths: Iterable[str] = CSRF_EXEMPT_PATHS,
        exempt_prefixes: Iterable[str] = CSRF_EXEMPT_PREFIXES,
    ) -> None:
        self.settings = settings
        self.exempt_paths = frozenset(exempt_paths)
        self.exempt_prefixes = tuple(exempt_prefixes)

    @staticmethod
    def generate_token() -> str:
        return generate_token_hex(32)

    def set_cookie(self, response: Response, token: str, *, secure: bool) -> None:
        # Readable by client script, which echoes it back in the x-csrf-token header
        response.set_cookie(
            CSRF_COOKIE,
            token,
            max_age=self.settings.csrf_token_ttl_seconds,
            path="/",
            httponly=False,
            secure=secure,
            samesite="none" if self.settings.production else "lax",
        )

    def is_exempt(self, path: str) -> bool:
        normalized = path.rstrip("/") or "/"
        if normalized in self.exempt_paths:
            return True
        return any(path.startswith(prefix) for prefix in self.exempt_prefixes)

    def requires_check(self, request: Request) -> bool:
        if request.method.upper() not in STATE_CHANGING_METHODS:
            return False
        if self.is_exempt(request.url.path):
            return False
        # A bearer-only client carries no ambient browser credential to forge.
        # Any auth cookie keeps the check on, since the cookie wins over the header.
        has_auth_cookie = bool(
            request.cookies.get(ACCESS_TOKEN_COOKIE)
            or request.cookies.get(REFRESH_TOKEN_COOKIE)
        )
        if request.headers.get("authorization") and not has_auth_cookie:
            return False
        return True

    def verify(self, request: Request) -> bool:
        header_token: Optional[str] = request.headers.get(CSRF_HEADER)
        cookie_token: Optional[str] = request.cookies.get(CSRF_COOKIE)
        if not header_token or not cookie_token:
            return False
        return constant_time_equals(header_token, cookie_token)
