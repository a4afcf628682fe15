"""Unit tests for the session manager.

Tests for:
- Sign-up, sign-in and credential checks
- Refresh token rotation and reuse detection
- Expiry handling
- Device fingerprint policies
- Logout and logout from all devices
- Stateless access tokens
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from sessionauth.config import FingerprintPolicy
from sessionauth.service.auth import (
    AuthConfig,
    DeviceContext,
    SessionManager,
)
from sessionauth.service.durations import Duration
from sessionauth.service.errors import (
    ConflictError,
    UnauthorizedError,
    UnauthorizedReason,
    ValidationError,
)
from sessionauth.storage.memory import MemoryStore

PASSWORD = "Correct-Horse-9"
LAPTOP = DeviceContext(user_agent="laptop-browser", ip_address="198.51.100.1")
PHONE = DeviceContext(user_agent="phone-app", ip_address="198.51.100.2")


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _config(policy: FingerprintPolicy = FingerprintPolicy.WARN) -> AuthConfig:
    return AuthConfig(
        jwt_secret="session-manager-test-secret",
        jwt_issuer="sessionauth",
        jwt_audience="sessionauth-clients",
        access_ttl=Duration.parse("5m"),
        refresh_ttl=Duration.parse("1d"),
        fingerprint_policy=policy,
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def manager(store, clock):
    return SessionManager(store, store, _config(), clock=clock)


async def _signup(manager, email="alice@example.com", name="Alice", device=LAPTOP):
    return await manager.sign_up(email, name, PASSWORD, device)


class TestSignUpAndSignIn:
    async def test_signup_returns_tokens_and_profile(self, manager, store):
        result = await _signup(manager)
        assert result.user.email == "alice@example.com"
        assert result.user.name == "Alice"
        assert result.tokens.access_token.count(".") == 2
        assert len(result.tokens.refresh_token) == 128
        session = store.find_by_token(result.tokens.refresh_token)
        assert session is not None
        assert session.user_id == result.user.id
        assert session.user_agent == LAPTOP.user_agent
        assert session.ip_address == LAPTOP.ip_address

    async def test_signup_expiry_follows_refresh_lifetime(self, manager, store, clock):
        result = await _signup(manager)
        session = store.find_by_token(result.tokens.refresh_token)
        assert session.expires_at == clock.now + timedelta(days=1)
        assert result.tokens.refresh_expires_at == session.expires_at

    async def test_signup_stores_a_hash_not_the_password(self, manager, store):
        result = await _signup(manager)
        pwd_hash, algo = store.get_password_record(result.user.id)
        assert algo == "argon2id"
        assert PASSWORD not in pwd_hash
        assert pwd_hash.startswith("$argon2id$")

    async def test_signin_after_signup_returns_same_profile(self, manager):
        created = await _signup(manager, email="Bob@Example.com", name="Bob Builder")
        result = await manager.sign_in_with_password("bob@example.com", PASSWORD, PHONE)
        assert result.user == created.user
        assert result.user.email == "bob@example.com"
        assert result.user.name == "Bob Builder"
        assert result.tokens.refresh_token != created.tokens.refresh_token

    @pytest.mark.parametrize(
        "email", ["alice@example.com", "ALICE@example.com", "  Alice@Example.COM "]
    )
    async def test_duplicate_email_conflicts_case_insensitively(self, manager, email):
        await _signup(manager)
        with pytest.raises(ConflictError) as exc_info:
            await manager.sign_up(email, "Someone Else", "Other-pass-1", PHONE)
        assert exc_info.value.status_code == 409
        assert exc_info.value.message == "An account with this email already exists"

    @pytest.mark.parametrize(
        "email,name,password,missing",
        [
            ("  ", "Alice", PASSWORD, ["email"]),
            ("alice@example.com", "   ", PASSWORD, ["name"]),
            ("alice@example.com", "Alice", "", ["password"]),
        ],
    )
    async def test_signup_requires_every_field(self, manager, store, email, name, password, missing):
        with pytest.raises(ValidationError) as exc_info:
            await manager.sign_up(email, name, password, LAPTOP)
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == {"fields": missing}
        assert store.users == {}

    async def test_duplicate_signup_creates_no_session(self, manager, store):
        await _signup(manager)
        with pytest.raises(ConflictError):
            await _signup(manager)
        assert len(store.sessions) == 1

    async def test_wrong_password_is_bad_credentials(self, manager):
        await _signup(manager)
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.sign_in_with_password("alice@example.com", "wrong-pass-1", LAPTOP)
        assert exc_info.value.reason is UnauthorizedReason.BAD_CREDENTIALS

    async def test_unknown_email_is_bad_credentials(self, manager):
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.sign_in_with_password("nobody@example.com", PASSWORD, LAPTOP)
        assert exc_info.value.reason is UnauthorizedReason.BAD_CREDENTIALS

    async def test_authenticate_credentials_returns_none_on_mismatch(self, manager):
        await _signup(manager)
        assert await manager.authenticate_credentials("alice@example.com", "nope") is None
        user = await manager.authenticate_credentials("alice@example.com", PASSWORD)
        assert user is not None and user.email == "alice@example.com"

    async def test_sign_in_does_not_check_the_password(self, manager, store):
        created = await _signup(manager)
        user = store.get_user(created.user.id)
        result = await manager.sign_in(user, PHONE)
        assert result.user.id == user.id
        assert store.find_by_token(result.tokens.refresh_token).user_agent == "phone-app"


class TestRefreshRotation:
    async def test_rotation_scenario(self, manager):
        signup = await _signup(manager)
        a1, r1 = signup.tokens.access_token, signup.tokens.refresh_token

        second = await manager.refresh(r1, LAPTOP)
        assert second.access_token != a1
        assert second.refresh_token != r1

        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.refresh(r1, LAPTOP)
        assert exc_info.value.reason is UnauthorizedReason.INVALID_TOKEN

        third = await manager.refresh(second.refresh_token, LAPTOP)
        assert third.refresh_token not in (r1, second.refresh_token)

    async def test_rotation_replaces_the_row(self, manager, store):
        signup = await _signup(manager)
        rotated = await manager.refresh(signup.tokens.refresh_token, LAPTOP)
        assert store.find_by_token(signup.tokens.refresh_token) is None
        assert store.find_by_token(rotated.refresh_token) is not None
        assert len(store.sessions) == 1

    async def test_rotated_session_records_the_current_device(self, manager, store):
        signup = await _signup(manager)
        rotated = await manager.refresh(signup.tokens.refresh_token, PHONE)
        session = store.find_by_token(rotated.refresh_token)
        assert session.user_agent == PHONE.user_agent
        assert session.ip_address == PHONE.ip_address

    async def test_rotated_access_token_carries_identity(self, manager):
        signup = await _signup(manager)
        rotated = await manager.refresh(signup.tokens.refresh_token, LAPTOP)
        claims = manager.authenticate_access_token(rotated.access_token)
        assert claims["sub"] == signup.user.id
        assert claims["email"] == "alice@example.com"
        assert claims["name"] == "Alice"

    @pytest.mark.parametrize("token", [None, ""])
    async def test_missing_token(self, manager, token):
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.refresh(token, LAPTOP)
        assert exc_info.value.reason is UnauthorizedReason.MISSING_TOKEN

    async def test_unknown_token(self, manager):
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.refresh("f" * 128, LAPTOP)
        assert exc_info.value.reason is UnauthorizedReason.INVALID_TOKEN

    async def test_expired_token_is_rejected_and_removed(self, manager, store, clock):
        signup = await _signup(manager)
        token = signup.tokens.refresh_token
        clock.advance(days=1)
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.refresh(token, LAPTOP)
        assert exc_info.value.reason is UnauthorizedReason.EXPIRED_TOKEN
        assert store.find_by_token(token) is None
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.refresh(token, LAPTOP)
        assert exc_info.value.reason is UnauthorizedReason.INVALID_TOKEN

    async def test_token_is_valid_until_its_expiry(self, manager, clock):
        signup = await _signup(manager)
        clock.advance(hours=23, minutes=59)
        await manager.refresh(signup.tokens.refresh_token, LAPTOP)

    async def test_refresh_for_deleted_user_is_invalid(self, manager, store):
        signup = await _signup(manager)
        store.users.pop(signup.user.id)
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.refresh(signup.tokens.refresh_token, LAPTOP)
        assert exc_info.value.reason is UnauthorizedReason.INVALID_TOKEN

    def test_refresh_from_parallel_threads_has_one_winner(self, manager):
        signup = asyncio.run(_signup(manager))
        token = signup.tokens.refresh_token
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                outcome = asyncio.run(manager.refresh(token, LAPTOP))
            except UnauthorizedError as exc:
                outcome = exc
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [r for r in results if not isinstance(r, UnauthorizedError)]
        losers = [r for r in results if isinstance(r, UnauthorizedError)]
        assert len(winners) == 1
        assert len(losers) == 7
        assert all(e.reason is UnauthorizedReason.INVALID_TOKEN for e in losers)


class TestFingerprintPolicy:
    async def test_warn_allows_a_different_device(self, store, clock):
        manager = SessionManager(store, store, _config(FingerprintPolicy.WARN), clock=clock)
        signup = await _signup(manager)
        rotated = await manager.refresh(signup.tokens.refresh_token, PHONE)
        assert rotated.refresh_token

    async def test_ignore_allows_a_different_device(self, store, clock):
        manager = SessionManager(store, store, _config(FingerprintPolicy.IGNORE), clock=clock)
        signup = await _signup(manager)
        rotated = await manager.refresh(signup.tokens.refresh_token, PHONE)
        assert rotated.refresh_token

    async def test_reject_refuses_a_different_device(self, store, clock):
        manager = SessionManager(store, store, _config(FingerprintPolicy.REJECT), clock=clock)
        signup = await _signup(manager)
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.refresh(signup.tokens.refresh_token, PHONE)
        assert exc_info.value.reason is UnauthorizedReason.INVALID_TOKEN
        # the presented token is spent either way
        assert store.find_by_token(signup.tokens.refresh_token) is None

    async def test_reject_allows_the_same_device(self, store, clock):
        manager = SessionManager(store, store, _config(FingerprintPolicy.REJECT), clock=clock)
        signup = await _signup(manager)
        rotated = await manager.refresh(signup.tokens.refresh_token, LAPTOP)
        assert rotated.refresh_token


class TestLogout:
    async def test_logout_removes_the_session(self, manager, store):
        signup = await _signup(manager)
        assert await manager.logout(signup.tokens.refresh_token) is True
        assert store.find_by_token(signup.tokens.refresh_token) is None
        with pytest.raises(UnauthorizedError):
            await manager.refresh(signup.tokens.refresh_token, LAPTOP)

    async def test_logout_is_idempotent(self, manager):
        signup = await _signup(manager)
        assert await manager.logout(signup.tokens.refresh_token) is True
        assert await manager.logout(signup.tokens.refresh_token) is False

    @pytest.mark.parametrize("token", [None, "", "not-a-session"])
    async def test_logout_without_a_session_does_not_raise(self, manager, token):
        assert await manager.logout(token) is False

    async def test_logout_all_keeps_the_excepted_session(self, manager, store):
        await _signup(manager)
        r1 = (await manager.sign_in_with_password("alice@example.com", PASSWORD, LAPTOP)).tokens
        r2 = (await manager.sign_in_with_password("alice@example.com", PASSWORD, PHONE)).tokens
        user_id = store.find_by_token(r1.refresh_token).user_id

        removed = await manager.logout_all_devices(user_id, except_token=r1.refresh_token)
        assert removed == 2
        assert [s.token for s in store.sessions.values()] == [r1.refresh_token]

        await manager.refresh(r1.refresh_token, LAPTOP)
        with pytest.raises(UnauthorizedError):
            await manager.refresh(r2.refresh_token, PHONE)

    async def test_logout_all_without_exception_removes_everything(self, manager, store):
        signup = await _signup(manager)
        await manager.sign_in_with_password("alice@example.com", PASSWORD, PHONE)
        assert await manager.logout_all_devices(signup.user.id) == 2
        assert store.sessions == {}

    async def test_logout_all_leaves_other_users_alone(self, manager, store):
        alice = await _signup(manager)
        bob = await _signup(manager, email="bob@example.com", name="Bob")
        await manager.logout_all_devices(alice.user.id)
        assert store.find_by_token(bob.tokens.refresh_token) is not None

    async def test_logout_all_with_foreign_token_still_clears_own_sessions(self, manager, store):
        alice = await _signup(manager)
        bob = await _signup(manager, email="bob@example.com", name="Bob")
        removed = await manager.logout_all_devices(
            alice.user.id, except_token=bob.tokens.refresh_token
        )
        assert removed == 1
        assert store.find_by_token(alice.tokens.refresh_token) is None
        assert store.find_by_token(bob.tokens.refresh_token) is not None


class TestAccessTokens:
    async def test_access_token_survives_revocation(self, manager):
        signup = await _signup(manager)
        await manager.logout_all_devices(signup.user.id)
        claims = manager.authenticate_access_token(signup.tokens.access_token)
        assert claims["sub"] == signup.user.id

    async def test_access_token_expires_on_its_own_schedule(self, manager, clock):
        signup = await _signup(manager)
        clock.advance(minutes=5)
        with pytest.raises(UnauthorizedError) as exc_info:
            manager.authenticate_access_token(signup.tokens.access_token)
        assert exc_info.value.reason is UnauthorizedReason.INVALID_TOKEN

    def test_missing_access_token(self, manager):
        with pytest.raises(UnauthorizedError) as exc_info:
            manager.authenticate_access_token(None)
        assert exc_info.value.reason is UnauthorizedReason.MISSING_TOKEN

    async def test_profile_is_a_projection_of_claims(self, manager):
        signup = await _signup(manager)
        claims = manager.authenticate_access_token(signup.tokens.access_token)
        assert manager.get_profile(claims) == signup.user

    def test_all_reasons_share_one_message(self):
        messages = {UnauthorizedError(reason).message for reason in UnauthorizedReason}
        assert messages == {"invalid or expired credentials"}


class TestExpirySweep:
    async def test_purge_removes_only_expired_sessions(self, manager, store, clock):
        old = await _signup(manager)
        clock.advance(hours=12)
        fresh = await manager.sign_in_with_password("alice@example.com", PASSWORD, PHONE)
        clock.advance(hours=12)
        assert manager.purge_expired_sessions() == 1
        assert store.find_by_token(old.tokens.refresh_token) is None
        assert store.find_by_token(fresh.tokens.refresh_token) is not None
