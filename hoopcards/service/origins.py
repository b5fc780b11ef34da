from __future__ import annotations

from typing import Iterable, List, Optional
from urllib.parse import urlparse

from starlette.requests import Request
from starlette.responses import Response

from hoopcards.config import Settings

DEFAULT_ORIGINS = ("http://localhost:3000", "http://localhost:3001")

CORS_ALLOW_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization, Cookie, x-csrf-token"
CORS_MAX_AGE = "86400"


def normalize_origin(value: Optional[str]) -> Optional[str]:
    """Reduce an Origin or Referer value to ``scheme://host[:port]``."""
    if not value or value == "null":
        return None
    parsed = urlparse(value.strip())
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


class OriginGate:
    """Allow-list check for the ``Origin`` of cross-site requests.

    The allow-list is the static development origins, the configured base URL
    and deployment host, the request's own origin, and ``ALLOWED_ORIGINS``.
    Wildcards are never emitted because credentials are always allowed.
    """

    def __init__(self, settings: Settings, *, extra_origins: Iterable[str] = ()) -> None:
        self.settings = settings
        origins: List[str] = list(DEFAULT_ORIGINS)
        origins.append(settings.app_base_url)
        if settings.deployment_url:
            host = settings.deployment_url
            origins.append(host if "://" in host else f"https://{host}")
        origins.extend(settings.allowed_origins)
        origins.extend(extra_origins)
        self._static = frozenset(
            filter(None, (normalize_origin(origin) for origin in origins))
        )

    @property
    def allowed_origins(self) -> frozenset[str]:
        return self._static

    @staticmethod
    def request_origin(request: Request) -> Optional[str]:
        """Origin header, falling back to the Referer's origin."""
        origin = request.headers.get("origin")
        if origin:
            # A present but unparsable Origin is reported as-is so it gets rejected
            return normalize_origin(origin) or origin
        return normalize_origin(request.headers.get("referer"))

    @staticmethod
    def self_origin(request: Request) -> str:
        proto = request.headers.get("x-forwarded-proto") or request.url.scheme
        host = request.headers.get("x-forwarded-host") or request.headers.get("host")
        if not host:
            host = request.url.netloc
        return f"{proto.split(',')[0].strip().lower()}://{host.lower()}"

    def is_allowed(self, origin: Optional[str], request: Optional[Request] = None) -> bool:
        # Non-browser clients and same-site navigations send no Origin at all
        if origin is None:
            return True
        if origin in self._static:
            return True
        if request is not None and origin == self.self_origin(request):
            return True
        return False

    def check(self, request: Request) -> tuple[bool, Optional[str]]:
        origin = self.request_origin(request)
        return self.is_allowed(origin, request), origin

    @staticmethod
    def apply_cors_headers(response: Response, origin: Optional[str]) -> Response:
        if not origin:
            return response
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
        response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
        response.headers["Access-Control-Max-Age"] = CORS_MAX_AGE
        vary = response.headers.get("Vary")
        if not vary:
            response.headers["Vary"] = "Origin"
        elif "origin" not in vary.lower():
            response.headers["Vary"] = f"{vary}, Origin"
        return response
