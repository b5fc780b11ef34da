"""Unit tests for auth service.

Tests for:
- Registration and password verification
- Refresh rotation and the revoked-token denylist
- Password change and reset
- Email verification
"""

import asyncio

import pytest

from hoopcards.service.auth import AuthService, RefreshRejected, RefreshUserMissing
from hoopcards.service.errors import ConflictError, NotFoundError, ValidationError
from hoopcards.service.tokens import TokenService
from hoopcards.storage.memory import MemoryStore
from hoopcards.storage.memory_cache import MemoryCache

PASSWORD = "CorrectHorse1!"
NEW_PASSWORD = "BatteryStaple2@"


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def auth_service(memory_store, cache, settings, clock, fast_hasher):
    return AuthService(
        memory_store,
        cache,
        settings,
        tokens=TokenService(settings, clock=clock),
        hasher=fast_hasher,
    )


def _register(auth_service, email="collector@example.com", password=PASSWORD):
    return asyncio.run(auth_service.register(email, password, "Collector"))


class TestRegistration:
    def test_register_normalizes_email_and_hashes_password(self, auth_service):
        user = _register(auth_service, email="  Collector@Example.COM ")
        assert user.email == "collector@example.com"
        assert user.role == "USER"
        assert user.password_hash and PASSWORD not in user.password_hash

    def test_duplicate_email_conflicts(self, auth_service):
        _register(auth_service)
        with pytest.raises(ConflictError):
            _register(auth_service)


class TestAuthenticate:
    def test_correct_password(self, auth_service):
        _register(auth_service)
        user, ok = auth_service.authenticate("collector@example.com", PASSWORD)
        assert user is not None and ok

    def test_wrong_password(self, auth_service):
        _register(auth_service)
        user, ok = auth_service.authenticate("collector@example.com", "nope")
        assert user is not None and not ok

    def test_unknown_user_still_verifies_a_hash(self, memory_store, cache, settings):
        calls = []

        class CountingHasher:
            def hash(self, password):
                return "$argon2id$placeholder"

            def verify(self, stored, password):
                calls.append(stored)
                return False

            def check_needs_rehash(self, stored):
                return False

        service = AuthService(memory_store, cache, settings, hasher=CountingHasher())
        user, ok = service.authenticate("ghost@example.com", PASSWORD)
        assert user is None and not ok
        assert calls == ["$argon2id$placeholder"]


class TestRefresh:
    async def test_refresh_rotates_and_revokes_old_token(self, auth_service):
        user = await auth_service.register("r@example.com", PASSWORD)
        first = auth_service.issue_session_tokens(user)

        refreshed_user, second = await auth_service.refresh(first.refresh_token)
        assert refreshed_user.id == user.id
        assert second.refresh_token != first.refresh_token
        assert second.csrf_token != first.csrf_token
        assert auth_service.authenticate_access_token(second.access_token).user_id == user.id

        with pytest.raises(RefreshRejected):
            await auth_service.refresh(first.refresh_token)

    async def test_refresh_uses_current_stored_role(self, auth_service):
        user = await auth_service.register("promote@example.com", PASSWORD)
        tokens = auth_service.issue_session_tokens(user)
        auth_service.set_user_role(user.id, "SELLER")

        _, rotated = await auth_service.refresh(tokens.refresh_token)
        assert auth_service.authenticate_access_token(rotated.access_token).role == "SELLER"

    async def test_refresh_rejects_garbage_and_access_tokens(self, auth_service):
        user = await auth_service.register("g@example.com", PASSWORD)
        tokens = auth_service.issue_session_tokens(user)
        with pytest.raises(RefreshRejected):
            await auth_service.refresh("not-a-token")
        with pytest.raises(RefreshRejected):
            await auth_service.refresh(tokens.access_token)

    async def test_refresh_for_deleted_user(self, auth_service):
        user = await auth_service.register("gone@example.com", PASSWORD)
        tokens = auth_service.issue_session_tokens(user)
        auth_service.delete_user(user.id)
        with pytest.raises(RefreshUserMissing) as exc_info:
            await auth_service.refresh(tokens.refresh_token)
        assert exc_info.value.status_code == 401

    async def test_logout_revokes_refresh_token_for_its_lifetime(
        self, auth_service, cache, clock, settings
    ):
        user = await auth_service.register("bye@example.com", PASSWORD)
        tokens = auth_service.issue_session_tokens(user)
        claim = auth_service.tokens.verify_refresh_token(tokens.refresh_token)

        await auth_service.logout(tokens.refresh_token)
        assert await auth_service.is_refresh_revoked(claim.jti)
        with pytest.raises(RefreshRejected):
            await auth_service.refresh(tokens.refresh_token)

        # The denylist entry lives exactly as long as the token could
        clock.advance(settings.refresh_token_ttl_seconds)
        assert not await cache.exists(f"refresh_revoked:{claim.jti}")

    async def test_revocation_check_fails_closed(self, auth_service, monkeypatch):
        async def broken_exists(key):
            raise ConnectionError("cache down")

        monkeypatch.setattr(auth_service.cache, "exists", broken_exists)
        assert await auth_service.is_refresh_revoked("any-jti")


class TestChangePassword:
    async def test_change_password(self, auth_service):
        user = await auth_service.register("cp@example.com", PASSWORD)
        tokens = auth_service.issue_session_tokens(user)

        await auth_service.change_password(
            user.id, PASSWORD, NEW_PASSWORD, refresh_token=tokens.refresh_token
        )
        assert auth_service.authenticate("cp@example.com", NEW_PASSWORD)[1]
        assert not auth_service.authenticate("cp@example.com", PASSWORD)[1]
        with pytest.raises(RefreshRejected):
            await auth_service.refresh(tokens.refresh_token)

    async def test_wrong_current_password(self, auth_service):
        user = await auth_service.register("cp2@example.com", PASSWORD)
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.change_password(user.id, "wrong", NEW_PASSWORD)
        assert exc_info.value.error_code == "invalid_current_password"

    async def test_reusing_password_rejected(self, auth_service):
        user = await auth_service.register("cp3@example.com", PASSWORD)
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.change_password(user.id, PASSWORD, PASSWORD)
        assert exc_info.value.error_code == "password_reused"

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.change_password("missing", PASSWORD, NEW_PASSWORD)


class TestPasswordReset:
    async def test_reset_token_is_single_use(self, auth_service):
        await auth_service.register("reset@example.com", PASSWORD)
        token = await auth_service.initiate_password_reset("reset@example.com")
        assert token and len(token) == 64

        await auth_service.complete_password_reset(token, NEW_PASSWORD)
        assert auth_service.authenticate("reset@example.com", NEW_PASSWORD)[1]
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.complete_password_reset(token, "Another3Pass$")
        assert exc_info.value.error_code == "invalid_reset_token"

    async def test_reset_token_expires_after_an_hour(self, auth_service, clock):
        await auth_service.register("late@example.com", PASSWORD)
        token = await auth_service.initiate_password_reset("late@example.com")
        clock.advance(60 * 60)
        with pytest.raises(ValidationError):
            await auth_service.complete_password_reset(token, NEW_PASSWORD)

    async def test_reset_for_unknown_email_returns_none(self, auth_service):
        assert await auth_service.initiate_password_reset("nobody@example.com") is None

    async def test_reset_to_same_password_keeps_token(self, auth_service):
        await auth_service.register("same@example.com", PASSWORD)
        token = await auth_service.initiate_password_reset("same@example.com")
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.complete_password_reset(token, PASSWORD)
        assert exc_info.value.error_code == "password_reused"
        assert await auth_service.peek_password_reset(token) is not None


class TestEmailVerification:
    async def test_verification_marks_email_verified_once(self, auth_service, memory_store):
        user = await auth_service.register("verify@example.com", PASSWORD)
        token = await auth_service.request_email_verification(user)

        verified = await auth_service.complete_email_verification(token)
        assert verified.email_verified
        assert memory_store.get_user(user.id).email_verified
        assert await auth_service.complete_email_verification(token) is None

    async def test_unknown_token(self, auth_service):
        assert await auth_service.complete_email_verification("deadbeef") is None
