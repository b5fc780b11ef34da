from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from starlette.requests import Request
from starlette.responses import Response

from hoopcards.config import Settings
from hoopcards.service.csrf import CSRF_COOKIE, CSRFGuard
from hoopcards.service.tokens import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: Optional[str]
    csrf_token: str


class CookieManager:
    """Cookie attribute policy for the three session cookies.

    ``access_token`` and ``refresh_token`` are HttpOnly and SameSite=Lax;
    ``csrf_token`` is left script-readable (see :class:`CSRFGuard`). All three are
    scoped to ``/`` and marked Secure in production or when the request came in
    over HTTPS.
    """

    def __init__(self, settings: Settings, csrf: Optional[CSRFGuard] = None) -> None:
        self.settings = settings
        self.csrf = csrf or CSRFGuard(settings)

    def is_secure(self, request: Optional[Request] = None) -> bool:
        if self.settings.production:
            return True
        if request is None:
            return False
        proto = request.headers.get("x-forwarded-proto") or request.url.scheme
        return proto.split(",")[0].strip().lower() == "https"

    def set_session_cookies(
        self,
        response: Response,
        tokens: SessionTokens,
        *,
        request: Optional[Request] = None,
    ) -> None:
        secure = self.is_secure(request)
        response.set_cookie(
            ACCESS_TOKEN_COOKIE,
            tokens.access_token,
            max_age=self.settings.access_token_ttl_seconds,
            path="/",
            httponly=True,
            secure=secure,
            samesite="lax",
        )
        if tokens.refresh_token:
            response.set_cookie(
                REFRESH_TOKEN_COOKIE,
                tokens.refresh_token,
                max_age=self.settings.refresh_token_ttl_seconds,
                path="/",
                httponly=True,
                secure=secure,
                samesite="lax",
            )
        self.csrf.set_cookie(response, tokens.csrf_token, secure=secure)

    def clear_auth_cookies(
        self, response: Response, *, request: Optional[Request] = None
    ) -> None:
        # Expire explicitly so the browser drops credentials immediately
        secure = self.is_secure(request)
        for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
            response.delete_cookie(
                name, path="/", secure=secure, httponly=True, samesite="lax"
            )
        response.delete_cookie(
            CSRF_COOKIE,
            path="/",
            secure=secure,
            httponly=False,
            samesite="none" if self.settings.production else "lax",
        )
