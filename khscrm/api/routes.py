from __future__ import annotations

import asyncio
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response, status

from khscrm.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from khscrm.logging import get_correlation_id, get_logger
from khscrm.service.auth import AuthContext, TokenPair
from khscrm.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
)
from khscrm.service.rate_limit import (
    API_POLICY,
    AUTH_POLICY,
    STRICT_POLICY,
)
from khscrm.service.runtime import check_rate_limit, get_runtime
from khscrm.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter()


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers to response per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, policy_name: str, client_key: str, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count a request against a named policy.

    Raises:
        RateLimitedError: when the client has used up the current window
    """
    policy = runtime.rate_limit_policies[policy_name]
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime,
        policy.key_for(client_key),
        policy.max_requests,
        policy.window_seconds,
        return_remaining=True,
    )
    info = RateLimitInfo(policy.max_requests, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning(
            "rate_limit_exceeded",
            policy=policy.name,
            client=client_key,
            reset_seconds=reset_seconds,
        )
        raise RateLimitedError(
            policy.message, limit=policy.max_requests, reset_seconds=reset_seconds
        )
    return info


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limited(policy_name: str) -> Callable:
    """Dependency enforcing ``policy_name`` for the calling client address."""

    async def dependency(request: Request, response: Response) -> RateLimitInfo:
        return await _enforce_rate_limit(
            get_runtime(), policy_name, _client_key(request), response=response
        )

    return dependency


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def require_role(*roles: Role) -> Callable:
    """Dependency that admits only callers holding one of ``roles``."""

    allowed = frozenset(Role(role) for role in roles)

    async def dependency(
        principal: AuthContext = Depends(get_auth_context),
    ) -> AuthContext:
        if principal.role not in allowed:
            logger.warning(
                "role_forbidden",
                user_id=principal.user_id,
                role=principal.role.value,
                required=sorted(role.value for role in allowed),
            )
            raise ForbiddenError(
                "insufficient permissions",
                detail={"required_roles": sorted(role.value for role in allowed)},
            )
        return principal

    return dependency


def _ok(data) -> Envelope:
    """Success envelope carrying the request's correlation id."""
    correlation_id = get_correlation_id()
    if correlation_id:
        return Envelope(status="ok", data=data, request_id=correlation_id)
    return Envelope(status="ok", data=data)


def _token_envelope(user: User, tokens: TokenPair) -> Envelope:
    return _ok(
        TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
            user=UserResponse.from_user(user),
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    _limit: RateLimitInfo = Depends(rate_limited(AUTH_POLICY)),
):
    """Authenticate with email and password and receive a token pair.

    Raises:
        401: If credentials are invalid
        429: If the client exhausted the auth policy
    """
    runtime = get_runtime()
    # argon2 and store round-trips run off the event loop
    user, tokens = await asyncio.to_thread(
        runtime.auth.login, body.email, body.password, remember_me=body.remember_me
    )
    return _token_envelope(user, tokens)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: RefreshRequest,
    _limit: RateLimitInfo = Depends(rate_limited(API_POLICY)),
):
    """Exchange a refresh token for a rotated pair; the presented token is revoked."""
    runtime = get_runtime()
    user, tokens = await asyncio.to_thread(runtime.auth.refresh, body.refresh_token)
    return _token_envelope(user, tokens)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    _limit: RateLimitInfo = Depends(rate_limited(API_POLICY)),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    if body is not None and body.all_sessions:
        revoked = await asyncio.to_thread(runtime.auth.revoke_all, principal.user_id)
        message = "Logged out from all sessions"
    else:
        revoked = await asyncio.to_thread(
            runtime.auth.revoke_session, principal.user_id, principal.session_id
        )
        message = "Logged out successfully"
    return _ok(LogoutResponse(message=message, revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(
    _limit: RateLimitInfo = Depends(rate_limited(API_POLICY)),
    principal: AuthContext = Depends(get_auth_context),
):
    """Get the current user's profile."""
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.get_user, principal.user_id)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": principal.user_id})
    return _ok(UserResponse.from_user(user))


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
async def register_user(
    body: RegisterRequest,
    _limit: RateLimitInfo = Depends(rate_limited(STRICT_POLICY)),
    principal: AuthContext = Depends(require_role(Role.OWNER)),
):
    """Create a new account. Only owners may register users.

    Raises:
        403: If the caller is not an owner
        409: If the email is already registered
    """
    runtime = get_runtime()
    if await asyncio.to_thread(runtime.store.get_user_by_email, body.email):
        raise ConflictError(
            "User with this email already exists", detail={"field": "email"}
        )
    user = await asyncio.to_thread(
        runtime.auth.create_user, body.email, body.password, name=body.name, role=body.role
    )
    logger.info(
        "user_registered",
        user_id=user.id,
        role=user.role.value,
        created_by=principal.user_id,
    )
    return _ok(UserResponse.from_user(user))
