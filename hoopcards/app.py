from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from hoopcards.api.error_handling import error_response, register_exception_handlers
from hoopcards.api.routes import client_ip, router, user_agent
from hoopcards.logging import get_logger, set_correlation_id
from hoopcards.service.csrf import STATE_CHANGING_METHODS
from hoopcards.service.errors import (
    CSRFError,
    OriginRejectedError,
    PayloadTooLargeError,
    ServiceError,
)

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfigured secrets fail before serving."""
    from hoopcards.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="HoopCards API", version=__version__, lifespan=lifespan)


_ORIGIN_CHECKED_METHODS = STATE_CHANGING_METHODS | {"OPTIONS"}


def _reject(exc: ServiceError):
    # Exception handlers do not run for responses produced inside middleware
    return error_response(exc.status_code, exc.message, exc.errors)


# Middlewares run in reverse registration order: the last one added is outermost.


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    from hoopcards.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.csrf.requires_check(request) and not runtime.csrf.verify(request):
        runtime.audit.record(
            "CSRF_VALIDATION_FAILED",
            ip=client_ip(request),
            user_agent=user_agent(request),
            resource="csrf",
            details={"path": request.url.path, "method": request.method},
        )
        logger.warning("csrf_validation_failed", path=request.url.path, method=request.method)
        return _reject(CSRFError("Invalid CSRF token"))
    return await call_next(request)


@app.middleware("http")
async def enforce_origin(request: Request, call_next):
    """Reject disallowed cross-origin calls and answer CORS preflights."""
    from hoopcards.service.runtime import get_runtime

    runtime = get_runtime()
    gate = runtime.origins
    allowed, origin = gate.check(request)
    method = request.method.upper()
    if method in _ORIGIN_CHECKED_METHODS and not allowed:
        runtime.audit.record(
            "ORIGIN_REJECTED",
            ip=client_ip(request),
            user_agent=user_agent(request),
            resource="cors",
            details={"origin": origin, "path": request.url.path, "method": method},
        )
        logger.warning("origin_rejected", origin=origin, path=request.url.path)
        return _reject(OriginRejectedError("Origin not allowed"))
    if method == "OPTIONS":
        return gate.apply_cors_headers(Response(status_code=204), origin)
    response = await call_next(request)
    if allowed:
        gate.apply_cors_headers(response, origin)
    return response


class RequestSizeLimit:
    """Cap request bodies at ``max_request_bytes``.

    A declared ``Content-Length`` is checked before the app runs. Chunked
    bodies carry no length, so the bytes actually received are counted too
    and the read fails with a 413 once the cap is passed.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        from hoopcards.service.runtime import get_runtime

        limit = get_runtime().settings.max_request_bytes
        request = Request(scope)
        declared = request.headers.get("content-length")
        if declared:
            try:
                too_large = int(declared) > limit
            except ValueError:
                response = error_response(400, "Invalid Content-Length header")
                await response(scope, receive, send)
                return
            if too_large:
                logger.warning(
                    "request_too_large",
                    path=request.url.path,
                    content_length=declared,
                    limit=limit,
                )
                await _reject(PayloadTooLargeError("Request too large"))(scope, receive, send)
                return

        received = 0

        async def receive_limited():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    logger.warning(
                        "request_too_large",
                        path=request.url.path,
                        received_bytes=received,
                        limit=limit,
                    )
                    # FastAPI re-raises HTTPException from body reads; anything else becomes a 400
                    raise StarletteHTTPException(status_code=413, detail="Request too large")
            return message

        await self.app(scope, receive_limited, send)


app.add_middleware(RequestSizeLimit)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or a new UUID).

    The id lands in every log line for the request, in ``meta.requestId`` of
    the response body, and in the ``X-Request-ID`` response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report database and shared-cache reachability."""
    from hoopcards.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    verify_store = getattr(runtime.store, "verify_connection", None)
    if callable(verify_store):
        db_ok = await _run_bounded("database", verify_store)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
    checks["redis"] = {
        "status": "healthy" if redis_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
