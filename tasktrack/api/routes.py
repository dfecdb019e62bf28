from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from tasktrack.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    ProfileResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RoleResponse,
    UserResponse,
)
from tasktrack.config import Settings
from tasktrack.logging import get_logger
from tasktrack.service.runtime import get_runtime
from tasktrack.service.sessions import AuthContext, SessionResult

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _fingerprint(request: Request) -> Dict[str, Optional[str]]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
    }


def _apply_refresh_cookie(response: Response, refresh_token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite,
    )


def _presented_refresh_token(request: Request, body_token: Optional[str], settings: Settings) -> Optional[str]:
    # Cookie wins so a stale body value from a browser client cannot override it
    return request.cookies.get(settings.refresh_cookie_name) or body_token


def _session_envelope(result: SessionResult, response: Response, settings: Settings) -> Envelope:
    user, tokens, _ = result
    if tokens.refresh_token:
        _apply_refresh_cookie(response, tokens.refresh_token, settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(user),
            access_token=tokens.access_token,
            access_expires_at=tokens.access_expires_at,
            token_type=tokens.token_type,
            refresh_token=tokens.refresh_token,
            refresh_expires_at=tokens.refresh_expires_at,
        ),
    )


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _extract_bearer(authorization)
    if authorization and not token:
        raise _http_error(
            "invalid_token", "authorization header must use the Bearer scheme", status_code=401
        )
    runtime = get_runtime()
    return await runtime.sessions.authenticate(token)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a user with the default role and start a session.

    Raises:
        403: If signup is disabled in settings
        409: If the email or username is already registered
    """
    runtime = get_runtime()
    result = await runtime.sessions.register(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        fingerprint=_fingerprint(request),
    )
    return _session_envelope(result, response, runtime.settings)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns an access token and sets the refresh token cookie. The refresh
    token is also returned in the body for clients without a cookie jar.

    Raises:
        401: Invalid credentials or deactivated account
        423: Account locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.sessions.login(
        body.email, body.password, fingerprint=_fingerprint(request)
    )
    return _session_envelope(result, response, runtime.settings)


@router.post("/logout", response_model=Envelope)
async def logout(request: Request, response: Response, body: Optional[LogoutRequest] = None):
    runtime = get_runtime()
    settings = runtime.settings
    token = _presented_refresh_token(request, body.refresh_token if body else None, settings)
    revoked = await runtime.sessions.logout(token)
    _clear_refresh_cookie(response, settings)
    return Envelope(status="ok", data={"message": "logged out", "revoked": revoked})


@router.post("/refresh", response_model=Envelope)
async def refresh(request: Request, response: Response, body: Optional[RefreshTokenRequest] = None):
    """Exchange a refresh token for a new token pair.

    Raises:
        401: Missing, expired, revoked or unknown refresh token
        409: The token was rotated concurrently and retries ran out
    """
    runtime = get_runtime()
    settings = runtime.settings
    token = _presented_refresh_token(request, body.refresh_token if body else None, settings)
    result = await runtime.sessions.refresh(token, fingerprint=_fingerprint(request))
    return _session_envelope(result, response, settings)


@router.get("/profile", response_model=Envelope)
async def profile(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user, roles = await runtime.sessions.profile(principal.user_id)
    return Envelope(
        status="ok",
        data=ProfileResponse(
            user=UserResponse.from_user(user),
            roles=[RoleResponse.from_role(role) for role in roles],
        ),
    )
