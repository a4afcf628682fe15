from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from sessionauth.api.schemas import (
    AuthResponse,
    Envelope,
    MessageResponse,
    RefreshResponse,
    SigninRequest,
    SignupRequest,
    UserResponse,
)
from sessionauth.logging import get_logger
from sessionauth.service.auth import AuthResult, DeviceContext
from sessionauth.service.errors import RateLimitedError
from sessionauth.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

UNKNOWN = "unknown"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


def _client_ip(request: Request, runtime: Runtime) -> str:
    if runtime.settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN


def _device_context(request: Request, runtime: Runtime) -> DeviceContext:
    return DeviceContext(
        user_agent=request.headers.get("User-Agent") or UNKNOWN,
        ip_address=_client_ip(request, runtime),
    )


async def _enforce_rate_limit(
    runtime: Runtime, request: Request, route: str, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Apply the per-client fixed window for ``route``.

    Raises:
        RateLimitedError: if the window's budget is spent
    """
    limit = runtime.settings.rate_limit_requests
    key = f"{route}:{_client_ip(request, runtime)}"
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, runtime.settings.rate_limit_window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", route=route, key=key)
        raise RateLimitedError(
            headers={**info.headers(), "Retry-After": str(reset_seconds)}
        )
    return info


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def get_claims(authorization: Optional[str] = Header(None)) -> dict[str, Any]:
    runtime = get_runtime()
    return runtime.auth.authenticate_access_token(_extract_bearer(authorization))


def _set_refresh_cookie(response: Response, runtime: Runtime, token: str) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.cookie_name,
        token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        max_age=runtime.auth.config.refresh_ttl.total_seconds,
        path="/",
    )


def _clear_refresh_cookie(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.cookie_name,
        path="/",
        secure=settings.secure_cookies,
        httponly=True,
        samesite="strict",
    )


def _auth_payload(result: AuthResult) -> dict:
    return AuthResponse(
        access_token=result.tokens.access_token,
        user=UserResponse(
            id=result.user.id, email=result.user.email, name=result.user.name
        ),
    ).model_dump(by_alias=True)


@router.post("/signup", response_model=Envelope, status_code=201)
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create a new account and open its first session.

    Returns the access token and profile; the refresh token travels only in
    the http-only cookie.

    Raises:
        400: If the email, name or password fails validation
        409: If the email is already registered
        429: If the client exceeded the sign-up rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "signup", response=response)
    result = await runtime.auth.sign_up(
        email=body.email,
        name=body.name,
        password=body.password,
        device=_device_context(request, runtime),
    )
    _set_refresh_cookie(response, runtime, result.tokens.refresh_token)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/signin", response_model=Envelope)
async def signin(body: SigninRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If the credentials do not match
        429: If the client exceeded the sign-in rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "signin", response=response)
    result = await runtime.auth.sign_in_with_password(
        body.email, body.password, _device_context(request, runtime)
    )
    _set_refresh_cookie(response, runtime, result.tokens.refresh_token)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/refresh", response_model=Envelope)
async def refresh(request: Request, response: Response):
    """Rotate the refresh cookie and mint a new access token.

    Raises:
        401: If the cookie is missing, unknown, already used or expired
        429: If the client exceeded the refresh rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "refresh", response=response)
    tokens = await runtime.auth.refresh(
        request.cookies.get(runtime.settings.cookie_name),
        _device_context(request, runtime),
    )
    _set_refresh_cookie(response, runtime, tokens.refresh_token)
    return Envelope(
        status="ok",
        data=RefreshResponse(access_token=tokens.access_token).model_dump(by_alias=True),
    )


@router.post("/logout", response_model=Envelope)
async def logout(request: Request, response: Response):
    """End the session named by the refresh cookie; always succeeds."""
    runtime = get_runtime()
    await runtime.auth.logout(request.cookies.get(runtime.settings.cookie_name))
    _clear_refresh_cookie(response, runtime)
    return Envelope(
        status="ok", data=MessageResponse(message="Logged out successfully").model_dump()
    )


@router.post("/logout-all", response_model=Envelope)
async def logout_all(
    request: Request,
    response: Response,
    claims: dict[str, Any] = Depends(get_claims),
):
    """Revoke every session of the caller except the one in the request cookie.

    Without a cookie all sessions are revoked and the cookie is cleared.

    Raises:
        401: If the bearer token is missing or invalid
    """
    runtime = get_runtime()
    current = request.cookies.get(runtime.settings.cookie_name)
    await runtime.auth.logout_all_devices(claims["sub"], except_token=current)
    if not current:
        _clear_refresh_cookie(response, runtime)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Logged out from all other devices").model_dump(),
    )


@router.get("/profile", response_model=Envelope)
async def profile(claims: dict[str, Any] = Depends(get_claims)):
    """Return the identity carried by the bearer token.

    Raises:
        401: If the bearer token is missing or invalid
    """
    runtime = get_runtime()
    user = runtime.auth.get_profile(claims)
    return Envelope(
        status="ok",
        data=UserResponse(id=user.id, email=user.email, name=user.name).model_dump(),
    )
