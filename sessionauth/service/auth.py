from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from sessionauth.config import FingerprintPolicy, Settings
from sessionauth.logging import get_logger
from sessionauth.service.durations import Duration
from sessionauth.service.errors import (
    ConflictError,
    UnauthorizedError,
    UnauthorizedReason,
    ValidationError,
)
from sessionauth.service.tokens import TokenIssuer
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import RefreshSession, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
DUPLICATE_EMAIL_MESSAGE = "An account with this email already exists"


class CredentialStore(Protocol):
    def create_user(
        self, email: str, name: str, password_hash: str, password_algo: str
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class SessionStore(Protocol):
    def find_by_token(self, token: str) -> Optional[RefreshSession]: ...

    def take_by_token(self, token: str) -> Optional[RefreshSession]: ...

    def delete_by_token(self, token: str) -> int: ...

    def delete_all_for_user(
        self, user_id: str, excluding: Optional[str] = None
    ) -> int: ...

    def insert(self, session: RefreshSession) -> RefreshSession: ...

    def purge_expired(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class AuthConfig:
    jwt_secret: str
    jwt_issuer: str
    jwt_audience: str
    access_ttl: Duration
    refresh_ttl: Duration
    fingerprint_policy: FingerprintPolicy = FingerprintPolicy.WARN

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthConfig":
        return cls(
            jwt_secret=settings.jwt_secret,
            jwt_issuer=settings.jwt_issuer,
            jwt_audience=settings.jwt_audience,
            access_ttl=settings.access_ttl,
            refresh_ttl=settings.refresh_ttl,
            fingerprint_policy=FingerprintPolicy(settings.fingerprint_policy),
        )


@dataclass(frozen=True)
class DeviceContext:
    user_agent: str = "unknown"
    ip_address: str = "unknown"


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    name: str

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(id=user.id, email=user.email, name=user.name)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


@dataclass(frozen=True)
class AuthResult:
    tokens: TokenPair
    user: UserProfile


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SessionManager:
    """Sign-up, sign-in, refresh rotation and logout over the credential and session stores.

    Holds no per-request state; every operation is a short sequence of store
    calls so any number of requests can share one instance.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        config: AuthConfig,
        *,
        issuer: Optional[TokenIssuer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.config = config
        self._clock = clock or utcnow
        self.issuer = issuer or TokenIssuer(
            config.jwt_secret,
            issuer=config.jwt_issuer,
            audience=config.jwt_audience,
            access_ttl=config.access_ttl,
            clock=lambda: self._now().timestamp(),
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # credentials

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.credentials.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def authenticate_credentials(self, email: str, password: str) -> Optional[User]:
        """Look up ``email`` and check ``password``; None on any mismatch."""
        user = self.credentials.get_user_by_email(normalize_email(email))
        if not user:
            self.logger.warning("signin_unknown_email", email=normalize_email(email))
            return None
        if not self.verify_password(user.id, password):
            self.logger.warning("signin_bad_password", user_id=user.id)
            return None
        return user

    # session lifecycle

    async def sign_up(
        self, email: str, name: str, password: str, device: DeviceContext
    ) -> AuthResult:
        normalized = normalize_email(email)
        missing = [
            field
            for field, value in (("email", normalized), ("name", name.strip()), ("password", password))
            if not value
        ]
        if missing:
            raise ValidationError("missing required fields", detail={"fields": missing})
        if self.credentials.get_user_by_email(normalized):
            self.logger.info("signup_duplicate_email", email=normalized)
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE, detail={"field": "email"})
        pwd_hash, algo = self._hash_password(password)
        try:
            user = self.credentials.create_user(normalized, name.strip(), pwd_hash, algo)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent sign-up for the same address
            self.logger.info("signup_duplicate_email", email=normalized, detail=exc.detail)
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE, detail={"field": "email"}) from exc
        tokens = self._issue_session(user, device)
        self.logger.info("user_signed_up", user_id=user.id)
        return AuthResult(tokens=tokens, user=UserProfile.from_user(user))

    async def sign_in(self, user: User, device: DeviceContext) -> AuthResult:
        """Open a session for a user whose credentials were already verified."""
        tokens = self._issue_session(user, device)
        self.logger.info("user_signed_in", user_id=user.id, ip_address=device.ip_address)
        return AuthResult(tokens=tokens, user=UserProfile.from_user(user))

    async def sign_in_with_password(
        self, email: str, password: str, device: DeviceContext
    ) -> AuthResult:
        user = await self.authenticate_credentials(email, password)
        if not user:
            raise UnauthorizedError(UnauthorizedReason.BAD_CREDENTIALS)
        return await self.sign_in(user, device)

    async def refresh(self, old_token: Optional[str], device: DeviceContext) -> TokenPair:
        """Redeem a refresh token for a new pair; the old token is consumed.

        Raises:
            UnauthorizedError: MISSING_TOKEN, INVALID_TOKEN (unknown, already
                rotated, fingerprint rejected, or user gone) or EXPIRED_TOKEN.
        """
        if not old_token:
            raise UnauthorizedError(UnauthorizedReason.MISSING_TOKEN)

        session = self.sessions.take_by_token(old_token)
        if session is None:
            self.logger.warning(
                "refresh_token_not_found",
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                message="possible refresh token reuse",
            )
            raise UnauthorizedError(UnauthorizedReason.INVALID_TOKEN)

        if session.is_expired(self._now()):
            self.logger.warning(
                "refresh_token_expired",
                user_id=session.user_id,
                expired_at=session.expires_at.isoformat(),
            )
            raise UnauthorizedError(UnauthorizedReason.EXPIRED_TOKEN)

        self._check_fingerprint(session, device)

        user = self.credentials.get_user(session.user_id)
        if not user:
            self.logger.warning("refresh_user_missing", user_id=session.user_id)
            raise UnauthorizedError(UnauthorizedReason.INVALID_TOKEN)

        tokens = self._issue_session(user, device)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return tokens

    def _check_fingerprint(self, session: RefreshSession, device: DeviceContext) -> None:
        policy = self.config.fingerprint_policy
        if policy is FingerprintPolicy.IGNORE or session.user_agent == device.user_agent:
            return
        self.logger.warning(
            "refresh_device_mismatch",
            user_id=session.user_id,
            stored_user_agent=session.user_agent,
            current_user_agent=device.user_agent,
            policy=policy.value,
        )
        if policy is FingerprintPolicy.REJECT:
            raise UnauthorizedError(UnauthorizedReason.INVALID_TOKEN)

    async def logout(self, token: Optional[str]) -> bool:
        """End one session. Returns whether a session was actually removed."""
        if not token:
            self.logger.info("logout_without_token")
            return False
        deleted = self.sessions.delete_by_token(token)
        if not deleted:
            self.logger.warning("logout_unknown_token")
            return False
        self.logger.info("user_logged_out")
        return True

    async def logout_all_devices(
        self, user_id: str, except_token: Optional[str] = None
    ) -> int:
        deleted = self.sessions.delete_all_for_user(user_id, excluding=except_token)
        self.logger.info(
            "user_logged_out_all",
            user_id=user_id,
            sessions_revoked=deleted,
            kept_current=bool(except_token),
        )
        return deleted

    def get_profile(self, claims: dict[str, Any]) -> UserProfile:
        return UserProfile(
            id=str(claims.get("sub", "")),
            email=str(claims.get("email", "")),
            name=str(claims.get("name", "")),
        )

    def authenticate_access_token(self, token: Optional[str]) -> dict[str, Any]:
        """Verify a bearer token by signature and expiry alone."""
        if not token:
            raise UnauthorizedError(UnauthorizedReason.MISSING_TOKEN)
        claims = self.issuer.decode_access_token(token)
        if not claims or not claims.get("sub"):
            raise UnauthorizedError(UnauthorizedReason.INVALID_TOKEN)
        return claims

    def purge_expired_sessions(self) -> int:
        return self.sessions.purge_expired(self._now())

    def _issue_session(self, user: User, device: DeviceContext) -> TokenPair:
        access_token = self.issuer.issue_access_token(
            {"sub": user.id, "email": user.email, "name": user.name}
        )
        session = RefreshSession.new(
            user_id=user.id,
            token=self.issuer.generate_opaque_token(),
            ttl=self.config.refresh_ttl.timedelta,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
            now=self._now(),
        )
        stored = self.sessions.insert(session)
        return TokenPair(
            access_token=access_token,
            refresh_token=stored.token,
            refresh_expires_at=stored.expires_at,
        )
