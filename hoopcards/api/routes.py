from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from typing import Any, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from hoopcards.api.error_handling import error_response, success_response
from hoopcards.api.schemas import (
    AddPaymentMethodRequest,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    PinConfirmation,
    RegisterRequest,
    ResetPasswordRequest,
    SetSecurityPinRequest,
    UpdateMeRequest,
    UpdateProfileRequest,
    UpdateUserRoleRequest,
    field_errors,
)
from hoopcards.config import Settings
from hoopcards.logging import get_logger
from hoopcards.service.auth import (
    AuthContext,
    RefreshRejected,
    RefreshUserMissing,
)
from hoopcards.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PayloadTooLargeError,
    RateLimitedError,
    ServiceError,
    ValidationError,
)
from hoopcards.service.pin import SENSITIVE_OPERATIONS
from hoopcards.service.rbac import can, is_admin
from hoopcards.service.runtime import Runtime, get_runtime
from hoopcards.service.tokens import REFRESH_TOKEN_COOKIE, extract_access_token
from hoopcards.storage.errors import ConstraintViolation
from hoopcards.storage.models import PaymentMethod

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

M = TypeVar("M", bound=BaseModel)

_AUTH = "auth"


def client_ip(request: Request) -> str:
    """First of x-forwarded-for, x-real-ip, cf-connecting-ip, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def _audit(
    runtime: Runtime,
    request: Request,
    action: str,
    *,
    user_id: Optional[str] = None,
    resource: str = "auth",
    resource_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> None:
    runtime.audit.record(
        action,
        ip=client_ip(request),
        user_agent=user_agent(request),
        resource=resource,
        user_id=user_id,
        resource_id=resource_id,
        details=details,
    )


async def _parse_body(request: Request, model: Type[M], settings: Settings) -> M:
    """Parse and validate a JSON body in a fixed order: size, JSON, schema.

    Failures raise ``ServiceError`` with ``error_code`` of ``payload_too_large``,
    ``invalid_json`` or ``validation_error`` so callers can audit each.
    """
    try:
        raw = await request.body()
    except StarletteHTTPException as exc:
        if exc.status_code != 413:
            raise
        raise PayloadTooLargeError("Request too large") from exc
    if len(raw) > settings.max_request_bytes:
        raise PayloadTooLargeError("Request too large")
    try:
        payload: Any = json.loads(raw or b"null")
    except (ValueError, UnicodeDecodeError, RecursionError):
        raise ValidationError(
            "Invalid JSON format in request body", error_code="invalid_json"
        )
    try:
        return model.model_validate(payload if payload is not None else {})
    except PydanticValidationError as exc:
        raise ValidationError("Invalid request data", errors=field_errors(exc))


def _card_fingerprint(settings: Settings, card_number: str) -> str:
    # Keyed so stored fingerprints cannot be brute-forced back to card numbers
    key = hashlib.sha256(b"payment-fingerprint:" + (settings.jwt_secret or "").encode()).digest()
    return hmac.new(key, card_number.encode(), hashlib.sha256).hexdigest()


async def get_current_user(request: Request) -> AuthContext:
    runtime = get_runtime()
    token = extract_access_token(request.cookies, request.headers.get("authorization"))
    ctx = runtime.auth.authenticate_access_token(token)
    if not ctx:
        raise AuthenticationError("Authentication required")
    return ctx


async def get_admin_user(
    request: Request, ctx: AuthContext = Depends(get_current_user)
) -> AuthContext:
    """Admin principal whose token role still matches the stored role."""
    runtime = get_runtime()
    user = runtime.store.get_user(ctx.user_id)
    stored_role = user.role if user else None
    if stored_role != ctx.role or not can(stored_role or "", "users", "manage"):
        _audit(
            runtime,
            request,
            "UNAUTHORIZED_ADMIN_ATTEMPT",
            user_id=ctx.user_id,
            resource="user",
            details={"path": request.url.path, "tokenRole": ctx.role},
        )
        raise ForbiddenError("Insufficient permissions")
    return ctx


def _stored_role_is_admin(runtime: Runtime, ctx: AuthContext) -> bool:
    user = runtime.store.get_user(ctx.user_id)
    return bool(user and user.role == ctx.role and is_admin(user.role))


# auth

_LOGIN_PARSE_FAILURES = {
    "invalid_json": "LOGIN_INVALID_JSON",
    "payload_too_large": "LOGIN_REQUEST_TOO_LARGE",
    "validation_error": "LOGIN_VALIDATION_FAILED",
}


@router.post("/auth/login", tags=["auth"])
async def login(request: Request):
    """Exchange email and password for access, refresh and CSRF cookies.

    Every failed attempt is recorded against the caller's IP in the ``auth``
    rate-limit category; a blocked caller is rejected before the body is read.
    """
    runtime = get_runtime()
    ip = client_ip(request)
    limiter = runtime.rate_limiter
    if await limiter.is_rate_limited(ip, _AUTH):
        _audit(runtime, request, "LOGIN_RATE_LIMITED")
        raise RateLimitedError(
            "Too many login attempts. Please try again later.",
            retry_after=await limiter.retry_after(ip, _AUTH),
        )

    try:
        body = await _parse_body(request, LoginRequest, runtime.settings)
    except ServiceError as exc:
        await limiter.record_attempt(ip, _AUTH)
        _audit(
            runtime,
            request,
            _LOGIN_PARSE_FAILURES.get(exc.error_code, "LOGIN_VALIDATION_FAILED"),
            details={"fields": sorted(exc.errors)} if exc.errors else None,
        )
        raise

    user, password_ok = runtime.auth.authenticate(body.email, body.password)
    if not user:
        await limiter.record_attempt(ip, _AUTH)
        _audit(runtime, request, "LOGIN_USER_NOT_FOUND")
        raise AuthenticationError("Invalid credentials")
    if not password_ok:
        await limiter.record_attempt(ip, _AUTH)
        _audit(runtime, request, "LOGIN_INVALID_PASSWORD", user_id=user.id)
        raise AuthenticationError("Invalid credentials")

    await limiter.clear_attempts(ip, _AUTH)
    tokens = runtime.auth.issue_session_tokens(user)
    _audit(runtime, request, "LOGIN_SUCCESS", user_id=user.id, details={"role": user.role})
    response = success_response(
        {"loginSuccess": True, "csrfToken": tokens.csrf_token}, "Login successful"
    )
    runtime.cookies.set_session_cookies(response, tokens, request=request)
    return response


_REGISTER_PARSE_FAILURES = {
    "invalid_json": "REGISTRATION_INVALID_JSON",
    "payload_too_large": "REGISTRATION_REQUEST_TOO_LARGE",
    "validation_error": "REGISTRATION_VALIDATION_FAILED",
}


@router.post("/auth/register", tags=["auth"])
async def register(request: Request):
    runtime = get_runtime()
    ip = client_ip(request)
    limiter = runtime.rate_limiter
    if await limiter.is_rate_limited(ip, _AUTH):
        _audit(runtime, request, "REGISTRATION_RATE_LIMITED")
        raise RateLimitedError("Too many registration attempts. Please try again later.")
    try:
        body = await _parse_body(request, RegisterRequest, runtime.settings)
    except ServiceError as exc:
        await limiter.record_attempt(ip, _AUTH)
        _audit(
            runtime,
            request,
            _REGISTER_PARSE_FAILURES.get(exc.error_code, "REGISTRATION_VALIDATION_FAILED"),
        )
        raise
    try:
        user = await runtime.auth.register(body.email, body.password, body.name)
    except ConflictError:
        await limiter.record_attempt(ip, _AUTH)
        _audit(runtime, request, "REGISTRATION_EMAIL_EXISTS")
        raise
    await limiter.clear_attempts(ip, _AUTH)
    _audit(runtime, request, "USER_REGISTERED", user_id=user.id)
    return success_response(
        {"user": user.to_public()}, "User created successfully", status_code=201
    )


def _refresh_failure(
    runtime: Runtime, request: Request, message: str
) -> JSONResponse:
    response = error_response(401, message)
    runtime.cookies.clear_auth_cookies(response, request=request)
    return response


@router.post("/auth/refresh", tags=["auth"])
async def refresh(request: Request):
    """Rotate the refresh cookie and mint a new access token and CSRF token."""
    runtime = get_runtime()
    refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    if not refresh_token:
        return error_response(401, "Refresh token required")
    try:
        user, tokens = await runtime.auth.refresh(refresh_token)
    except RefreshRejected as exc:
        _audit(runtime, request, "TOKEN_REFRESH_INVALID")
        return _refresh_failure(runtime, request, exc.message)
    except RefreshUserMissing as exc:
        _audit(runtime, request, "TOKEN_REFRESH_USER_NOT_FOUND")
        return _refresh_failure(runtime, request, exc.message)
    _audit(runtime, request, "TOKEN_REFRESH_SUCCESS", user_id=user.id)
    response = success_response(
        {"csrfToken": tokens.csrf_token}, "Token refreshed successfully"
    )
    runtime.cookies.set_session_cookies(response, tokens, request=request)
    return response


@router.post("/auth/logout", tags=["auth"])
async def logout(request: Request, ctx: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.logout(request.cookies.get(REFRESH_TOKEN_COOKIE))
    _audit(runtime, request, "USER_LOGOUT", user_id=ctx.user_id)
    response = success_response(None, "Logged out successfully")
    runtime.cookies.clear_auth_cookies(response, request=request)
    return response


@router.get("/auth/me", tags=["auth"])
async def me(ctx: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(ctx.user_id)
    if not user:
        raise NotFoundError("User not found")
    return success_response(
        {
            "user": user.to_public(),
            "session": {
                "role": ctx.role,
                "issuedAt": ctx.claim.issued_at,
                "expiresAt": ctx.claim.expires_at,
            },
        }
    )


_CHANGE_PASSWORD_FAILURES = {
    "invalid_current_password": "PASSWORD_CHANGE_INVALID_CURRENT",
    "password_reused": "PASSWORD_CHANGE_SAME_PASSWORD",
    "not_found": "PASSWORD_CHANGE_USER_NOT_FOUND",
}


@router.post("/auth/change-password", tags=["auth"])
async def change_password(request: Request, ctx: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    ip = client_ip(request)
    if await runtime.rate_limiter.is_rate_limited(ip, "sensitive"):
        _audit(runtime, request, "PASSWORD_CHANGE_RATE_LIMITED", user_id=ctx.user_id)
        raise RateLimitedError("Too many attempts. Please try again later.")
    try:
        body = await _parse_body(request, ChangePasswordRequest, runtime.settings)
    except ServiceError:
        _audit(runtime, request, "PASSWORD_CHANGE_VALIDATION_FAILED", user_id=ctx.user_id)
        raise
    try:
        await runtime.pin.require_pin_if_set(
            ctx.user_id, body.pin, SENSITIVE_OPERATIONS["CHANGE_PASSWORD"], ip=ip
        )
        user = await runtime.auth.change_password(
            ctx.user_id,
            body.current_password,
            body.new_password,
            refresh_token=request.cookies.get(REFRESH_TOKEN_COOKIE),
        )
    except ServiceError as exc:
        action = _CHANGE_PASSWORD_FAILURES.get(exc.error_code)
        if action:
            _audit(runtime, request, action, user_id=ctx.user_id)
        if exc.error_code == "invalid_current_password":
            await runtime.rate_limiter.record_attempt(ip, "sensitive")
        raise
    except Exception as exc:
        _audit(
            runtime,
            request,
            "PASSWORD_CHANGE_ERROR",
            user_id=ctx.user_id,
            details={"errorType": type(exc).__name__},
        )
        raise

    _audit(runtime, request, "PASSWORD_CHANGE_SUCCESS", user_id=user.id)
    # The old refresh token was revoked, so hand out a fresh session
    tokens = runtime.auth.issue_session_tokens(user)
    response = success_response(
        {"csrfToken": tokens.csrf_token}, "Password changed successfully"
    )
    runtime.cookies.set_session_cookies(response, tokens, request=request)
    return response


_FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, we have sent a password reset link."
)


@router.post("/auth/forgot-password", tags=["auth"])
async def forgot_password(request: Request):
    """Always answers with the same message whether or not the account exists."""
    runtime = get_runtime()
    ip = client_ip(request)
    limiter = runtime.rate_limiter
    if await limiter.is_rate_limited(ip, _AUTH):
        _audit(runtime, request, "PASSWORD_RESET_RATE_LIMITED")
        raise RateLimitedError("Too many password reset attempts. Please try again later.")
    await limiter.record_attempt(ip, _AUTH)
    try:
        body = await _parse_body(request, ForgotPasswordRequest, runtime.settings)
    except ServiceError as exc:
        if exc.error_code == "invalid_json":
            _audit(runtime, request, "PASSWORD_RESET_INVALID_JSON")
        raise

    token = await runtime.auth.initiate_password_reset(body.email)
    if token is None:
        _audit(runtime, request, "PASSWORD_RESET_NONEXISTENT_USER")
        return success_response(None, _FORGOT_PASSWORD_MESSAGE)
    user = runtime.auth.find_user_by_email(body.email)
    runtime.email.send_password_reset(body.email, token)
    _audit(runtime, request, "PASSWORD_RESET_REQUESTED", user_id=user.id if user else None)
    return success_response(None, _FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", tags=["auth"])
async def reset_password(request: Request):
    runtime = get_runtime()
    ip = client_ip(request)
    limiter = runtime.rate_limiter
    if await limiter.is_rate_limited(ip, _AUTH):
        _audit(runtime, request, "PASSWORD_RESET_COMPLETION_RATE_LIMITED")
        raise RateLimitedError("Too many password reset attempts. Please try again later.")
    try:
        body = await _parse_body(request, ResetPasswordRequest, runtime.settings)
    except ServiceError:
        _audit(runtime, request, "PASSWORD_RESET_VALIDATION_FAILED")
        raise
    try:
        user = await runtime.auth.complete_password_reset(body.token, body.password)
    except ValidationError as exc:
        if exc.error_code == "invalid_reset_token":
            await limiter.record_attempt(ip, _AUTH)
            _audit(runtime, request, "PASSWORD_RESET_INVALID_TOKEN")
        elif exc.error_code == "password_reused":
            _audit(runtime, request, "PASSWORD_RESET_SAME_PASSWORD")
        raise
    _audit(runtime, request, "PASSWORD_RESET_COMPLETED", user_id=user.id)
    return success_response(
        None,
        "Password reset successfully. You can now log in with your new password.",
    )


@router.post("/auth/send-verification-email", tags=["auth"])
async def send_verification_email(
    request: Request, ctx: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    user = runtime.store.get_user(ctx.user_id)
    if not user:
        raise NotFoundError("User not found")
    if user.email_verified:
        raise ValidationError("Email already verified")
    token = await runtime.auth.request_email_verification(user)
    runtime.email.send_email_verification(user.email, token)
    _audit(runtime, request, "EMAIL_VERIFICATION_SENT", user_id=user.id)
    return success_response(None, "Verification email sent. Please check your inbox.")


@router.get("/auth/verify-email/{token}", tags=["auth"])
async def verify_email(request: Request, token: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    user = await runtime.auth.complete_email_verification(token)
    if not user:
        raise ValidationError("Invalid or expired verification token")
    _audit(runtime, request, "EMAIL_VERIFIED", user_id=user.id)
    return success_response(None, "Email verified successfully")


# users: self service


@router.get("/users/me", tags=["users"])
async def get_me(request: Request, ctx: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(ctx.user_id)
    if not user:
        raise NotFoundError("User not found")
    _audit(
        runtime,
        request,
        "USER_PROFILE_SELF_VIEWED",
        user_id=user.id,
        resource="user",
        resource_id=user.id,
    )
    return success_response(user.to_public(), "Profile retrieved successfully")


async def _enforce_profile_rate_limit(runtime: Runtime, request: Request) -> None:
    if not await runtime.rate_limiter.hit(client_ip(request), "profile_updates"):
        raise RateLimitedError("Too many profile updates. Please try again later.")


@router.patch("/users/me", tags=["users"])
async def update_me(
    body: UpdateMeRequest, request: Request, ctx: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    await _enforce_profile_rate_limit(runtime, request)
    user = runtime.store.get_user(ctx.user_id)
    if not user:
        raise NotFoundError("User not found")

    changes: dict[str, Any] = {}
    if body.name is not None and body.name != user.name:
        changes["name"] = body.name
    if body.bio is not None and body.bio != user.bio:
        changes["bio"] = body.bio
    if body.email is not None and body.email != user.email:
        await runtime.pin.require_pin_if_set(
            user.id, body.pin, SENSITIVE_OPERATIONS["UPDATE_EMAIL"], ip=client_ip(request)
        )
        if runtime.store.get_user_by_email(body.email):
            raise ConflictError("Email already in use")
        changes["email"] = body.email
        changes["email_verified"] = False

    if not changes:
        return success_response(user.to_public(), "No changes detected")
    try:
        updated = runtime.store.update_user(user.id, **changes)
    except ConstraintViolation:
        raise ConflictError("Email already in use")
    _audit(
        runtime,
        request,
        "USER_PROFILE_SELF_UPDATED",
        user_id=user.id,
        resource="user",
        resource_id=user.id,
        details={"updatedFields": sorted(changes)},
    )
    return success_response(updated.to_public(), "Profile updated successfully")


@router.delete("/users/me", tags=["users"])
async def delete_me(
    request: Request,
    body: Optional[PinConfirmation] = None,
    ctx: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    await runtime.pin.require_pin_if_set(
        ctx.user_id,
        body.pin if body else None,
        SENSITIVE_OPERATIONS["DELETE_ACCOUNT"],
        ip=client_ip(request),
    )
    if not runtime.auth.delete_user(ctx.user_id):
        raise NotFoundError("User not found")
    await runtime.auth.logout(request.cookies.get(REFRESH_TOKEN_COOKIE))
    _audit(
        runtime,
        request,
        "ACCOUNT_DELETED",
        user_id=ctx.user_id,
        resource="user",
        resource_id=ctx.user_id,
    )
    response = success_response(None, "Account deleted successfully")
    runtime.cookies.clear_auth_cookies(response, request=request)
    return response


@router.post("/users/{user_id}/security-pin", tags=["users"])
async def set_security_pin(
    body: SetSecurityPinRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    if ctx.user_id != user_id:
        raise ForbiddenError("Forbidden: You can only set your own security PIN")
    # Replacing an existing PIN needs the current one
    await runtime.pin.require_pin_if_set(
        user_id, body.current_pin, "changing your security PIN", ip=client_ip(request)
    )
    runtime.pin.set_pin(user_id, body.pin, body.confirm_pin)
    _audit(
        runtime,
        request,
        "SECURITY_PIN_SET",
        user_id=user_id,
        resource="user",
        resource_id=user_id,
    )
    return success_response(None, "Security PIN set successfully")


@router.delete("/users/{user_id}/security-pin", tags=["users"])
async def remove_security_pin(
    request: Request,
    user_id: str = Path(..., max_length=128),
    body: Optional[PinConfirmation] = None,
    ctx: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    acting_as_admin = ctx.user_id != user_id and _stored_role_is_admin(runtime, ctx)
    if ctx.user_id != user_id and not acting_as_admin:
        raise ForbiddenError("Forbidden: You can only remove your own security PIN")
    if not runtime.store.get_user(user_id):
        raise NotFoundError("User not found")
    await runtime.pin.remove_pin(
        user_id,
        body.pin if body else None,
        acting_as_admin=acting_as_admin,
        ip=client_ip(request),
    )
    _audit(
        runtime,
        request,
        "SECURITY_PIN_REMOVED",
        user_id=ctx.user_id,
        resource="user",
        resource_id=user_id,
        details={"byAdmin": acting_as_admin},
    )
    return success_response(None, "Security PIN removed successfully")


@router.patch("/users/{user_id}/profile", tags=["users"])
async def update_profile(
    body: UpdateProfileRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    is_owner = ctx.user_id == user_id
    if not is_owner and not (
        _stored_role_is_admin(runtime, ctx)
        and can(ctx.role, "profile", "update", actor_id=ctx.user_id, owner_id=user_id)
    ):
        raise ForbiddenError("Forbidden: You can only update your own profile")
    await _enforce_profile_rate_limit(runtime, request)
    user = runtime.store.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")

    changes: dict[str, Any] = {}
    if body.name is not None and body.name != user.name:
        changes["name"] = body.name
    if body.bio is not None and body.bio != user.bio:
        changes["bio"] = body.bio
    if body.shipping_address is not None:
        address = body.shipping_address.to_storage()
        if address != user.shipping_address:
            if is_owner:
                await runtime.pin.require_pin_if_set(
                    user.id,
                    body.pin,
                    SENSITIVE_OPERATIONS["UPDATE_SHIPPING_ADDRESS"],
                    ip=client_ip(request),
                )
            changes["shipping_address"] = address

    if not changes:
        return success_response(user.to_public(), "No changes detected")
    updated = runtime.store.update_user(user.id, **changes)
    _audit(
        runtime,
        request,
        "USER_EXTENDED_PROFILE_UPDATED",
        user_id=ctx.user_id,
        resource="user",
        resource_id=user.id,
        details={"updatedFields": sorted(changes)},
    )
    return success_response(updated.to_public(), "Extended profile updated successfully")


# users: payment methods


@router.get("/users/me/payment-methods", tags=["payments"])
async def list_payment_methods(
    request: Request, ctx: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    user = runtime.store.get_user(ctx.user_id)
    if not user:
        raise NotFoundError("User not found")
    _audit(
        runtime,
        request,
        "PAYMENT_METHODS_VIEWED",
        user_id=user.id,
        resource="payment_method",
    )
    return success_response(
        [method.to_public() for method in user.payment_methods],
        "Payment methods retrieved successfully",
    )


@router.post("/users/me/payment-methods", tags=["payments"])
async def add_payment_method(
    body: AddPaymentMethodRequest,
    request: Request,
    ctx: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    await runtime.pin.require_pin(
        ctx.user_id, body.pin, "add payment method", ip=client_ip(request)
    )
    method = PaymentMethod(
        id=str(uuid.uuid4()),
        card_brand=body.card_brand,
        last4=body.card_number[-4:],
        expiry_month=body.expiry_month,
        expiry_year=body.expiry_year,
        fingerprint=_card_fingerprint(runtime.settings, body.card_number),
        nickname=body.nickname,
    )
    runtime.store.add_payment_method(ctx.user_id, method)
    _audit(
        runtime,
        request,
        "PAYMENT_METHOD_ADDED",
        user_id=ctx.user_id,
        resource="payment_method",
        resource_id=method.id,
        details={"cardBrand": method.card_brand, "last4": method.last4},
    )
    return success_response(
        method.to_public(), "Payment method added successfully", status_code=201
    )


@router.delete("/users/me/payment-methods/{method_id}", tags=["payments"])
async def delete_payment_method(
    request: Request,
    method_id: str = Path(..., max_length=128),
    body: Optional[PinConfirmation] = None,
    ctx: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    await runtime.pin.require_pin(
        ctx.user_id,
        body.pin if body else None,
        "remove payment method",
        ip=client_ip(request),
    )
    if not runtime.store.remove_payment_method(ctx.user_id, method_id):
        raise NotFoundError("Payment method not found")
    _audit(
        runtime,
        request,
        "PAYMENT_METHOD_DELETED",
        user_id=ctx.user_id,
        resource="payment_method",
        resource_id=method_id,
    )
    return success_response(None, "Payment method removed successfully")


# search


@router.get("/search", tags=["search"])
async def search(
    request: Request,
    q: str = Query(..., min_length=1, max_length=200),
    limit: int = Query(20, ge=1, le=50),
):
    """Public collector search, rate limited per IP by the ``search`` category."""
    runtime = get_runtime()
    if not await runtime.rate_limiter.hit(client_ip(request), "search"):
        raise RateLimitedError("Too many search requests. Please try again later.")
    needle = q.strip().lower()
    results = [
        {"id": user.id, "name": user.name}
        for user in runtime.store.list_users(limit=1000)
        if user.name and needle in user.name.lower()
    ][:limit]
    _audit(
        runtime,
        request,
        "SEARCH_PERFORMED",
        resource="search",
        details={"resultCount": len(results)},
    )
    return success_response({"query": q, "results": results})


# admin


@router.get("/users", tags=["admin"])
async def list_users(
    request: Request,
    role: Optional[str] = Query(None, max_length=16),
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(role=role.upper() if role else None, limit=limit)
    _audit(
        runtime,
        request,
        "USERS_LISTED",
        user_id=ctx.user_id,
        resource="user",
        details={"count": len(users)},
    )
    return success_response(
        [user.to_public() for user in users], "Users retrieved successfully"
    )


@router.patch("/users/{user_id}/role", tags=["admin"])
async def update_user_role(
    body: UpdateUserRoleRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = runtime.auth.set_user_role(user_id, body.role)
    if not user:
        raise NotFoundError("User not found")
    _audit(
        runtime,
        request,
        "USER_ROLE_UPDATED",
        user_id=ctx.user_id,
        resource="user",
        resource_id=user_id,
        details={"role": body.role},
    )
    return success_response(user.to_public(), "User role updated successfully")


@router.delete("/users/{user_id}", tags=["admin"])
async def delete_user(
    request: Request,
    user_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    if user_id == ctx.user_id:
        raise ValidationError("Use the account settings to delete your own account")
    if not runtime.auth.delete_user(user_id):
        raise NotFoundError("User not found")
    _audit(
        runtime,
        request,
        "USER_DELETED_BY_ADMIN",
        user_id=ctx.user_id,
        resource="user",
        resource_id=user_id,
    )
    return success_response(None, "User deleted successfully")
