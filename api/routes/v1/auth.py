"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/signup                    -- create a local account; returns a session
  POST   /api/v1/auth/signin                    -- password sign-in; returns a session
  POST   /api/v1/auth/signout                   -- revoke the caller's sessions
  POST   /api/v1/auth/refresh                   -- rotate a refresh token
  POST   /api/v1/auth/verify-token              -- introspect an access token
  GET    /api/v1/auth/me                        -- current user (requires auth)
  PATCH  /api/v1/auth/me                        -- update display name / avatar (requires auth)
  DELETE /api/v1/auth/me                        -- delete the account (requires auth)
  POST   /api/v1/auth/reset-password-request    -- request a reset email (always 200)
  POST   /api/v1/auth/reset-password            -- reset by token, or change with current password (auth)
  POST   /api/v1/auth/verify-email              -- redeem a verification token
  POST   /api/v1/auth/resend-verification       -- re-send the verification email
  GET    /api/v1/auth/providers                 -- active provider, enabled providers, features
  GET    /api/v1/auth/oauth/{provider}          -- OAuth authorization URL
  GET    /api/v1/auth/oauth/{provider}/callback -- finish OAuth sign-in; returns a session

Security:
  [H2] signin, signup and both password-reset endpoints are rate-limited per IP.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Enumeration: reset-password-request and resend-verification answer with the
       same message whether or not the email exists.

AuthError raised by the service propagates to the handler in api/main.py,
which renders the {"error": {"code", "message"}} envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    MessageResponse,
    OAuthUrlResponse,
    RefreshRequest,
    ResendVerificationRequest,
    ResetPasswordBody,
    ResetPasswordRequestBody,
    SignInRequest,
    SignUpRequest,
    UserPatch,
    VerifyEmailRequest,
    VerifyTokenRequest,
)
from auth.dependencies import get_bearer_token, get_current_user
from auth.models import AuthSession, AuthUser, PasswordUpdate
from auth.service import AuthService

# Auth policy:
# - signup, signin, refresh, verify-token, verify-email, providers, oauth/*: public
# - reset-password-request, resend-verification: public, enumeration-safe
# - reset-password: public with a token; requires auth for the current-password flow
# - signout: requires a bearer token (a dead token is not an error)
# - me (GET/PATCH/DELETE): requires auth (get_current_user)
router = APIRouter()

_RESET_REQUESTED = "If an account exists for that email, a reset link has been sent."
_VERIFICATION_SENT = "If the account needs verification, a new link has been sent."


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _session_response(session: AuthSession, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=session.to_wire())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", status_code=201)
async def signup(request: Request, body: SignUpRequest) -> JSONResponse:
    """Create a local account and return its first session."""
    session = await _service(request).sign_up(body.email, body.password, body.display_name, body.provider)
    return _session_response(session, status_code=201)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/signin")
async def signin(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password both return INVALID_CREDENTIALS.
    """
    session = await _service(request).sign_in(body.email, body.password, body.provider)
    return _session_response(session)


@router.post("/auth/signout", response_model=MessageResponse)
async def signout(request: Request) -> MessageResponse:
    token = get_bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Missing or invalid authorization header."},
        )
    await _service(request).sign_out(token)
    return MessageResponse(message="Signed out.")


@router.post("/auth/refresh")
async def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Redeem a refresh token for a new session. Each refresh token works once."""
    session = await _service(request).refresh_session(body.refresh_token, body.provider)
    return _session_response(session)


@router.post("/auth/verify-token")
async def verify_token(request: Request, body: VerifyTokenRequest) -> dict:
    verification = await _service(request).verify_token(body.token, body.provider)
    return {
        "valid": verification.valid,
        "user": verification.user.to_wire() if verification.user else None,
        "expiresAt": verification.expires_at,
        "error": verification.error,
    }


# ---------------------------------------------------------------------------
# Current user (authenticated)
# ---------------------------------------------------------------------------


@router.get("/auth/me")
async def me(current_user: AuthUser = Depends(get_current_user)) -> dict:
    """Return the live profile of the authenticated user."""
    return current_user.to_wire()


@router.patch("/auth/me")
async def update_me(
    request: Request,
    body: UserPatch,
    current_user: AuthUser = Depends(get_current_user),
) -> dict:
    user = await _service(request).update_user(
        current_user.id, display_name=body.display_name, avatar_url=body.avatar_url
    )
    return user.to_wire()


@router.delete("/auth/me", response_model=MessageResponse)
async def delete_me(request: Request, current_user: AuthUser = Depends(get_current_user)) -> MessageResponse:
    await _service(request).delete_user(current_user.id)
    return MessageResponse(message="Account deleted.")


# ---------------------------------------------------------------------------
# Passwords and email verification
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/reset-password-request", response_model=MessageResponse)
async def reset_password_request(request: Request, body: ResetPasswordRequestBody) -> MessageResponse:
    """Always answers with the same message (enumeration safety)."""
    await _service(request).reset_password_request(body.email)
    return MessageResponse(message=_RESET_REQUESTED)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/reset-password", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordBody) -> MessageResponse:
    """Reset with a token, or change the password of the authenticated caller.

    The token flow signs the user out everywhere. The current-password flow
    requires a bearer token and keeps existing sessions.
    """
    update = PasswordUpdate(
        new_password=body.new_password,
        token=body.token,
        current_password=body.current_password,
    )
    user_id = None
    if not body.token:
        user_id = (await get_current_user(request)).id
    await _service(request).reset_password(update, user_id)
    return MessageResponse(message="Password updated.")


@router.post("/auth/verify-email")
async def verify_email(request: Request, body: VerifyEmailRequest) -> dict:
    user = await _service(request).verify_email(body.token)
    return user.to_wire()


@router.post("/auth/resend-verification", response_model=MessageResponse)
async def resend_verification(request: Request, body: ResendVerificationRequest) -> MessageResponse:
    """Re-send the verification link.

    Anonymous callers must supply an email and always get the same answer.
    Authenticated callers always act on their own account (body.email is
    ignored) and are told when it is already verified.
    """
    authenticated = get_bearer_token(request) is not None
    email = body.email
    if authenticated:
        email = (await get_current_user(request)).email
    if not email:
        raise HTTPException(
            status_code=422,
            detail={"code": "validation_error", "message": "An email address is required."},
        )
    await _service(request).resend_verification_email(email, authenticated=authenticated)
    return MessageResponse(message=_VERIFICATION_SENT)


# ---------------------------------------------------------------------------
# Providers and OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers")
async def list_providers(request: Request) -> dict:
    """Return the active provider, the enabled providers and feature flags.

    Public endpoint -- the sign-in page calls this to decide what to render.
    """
    return _service(request).describe()


@router.get("/auth/oauth/{provider}", response_model=OAuthUrlResponse)
async def oauth_url(request: Request, provider: str) -> OAuthUrlResponse:
    redirect_url = str(request.url_for("oauth_callback", provider=provider))
    url = await _service(request).get_oauth_url(provider, redirect_url)
    return OAuthUrlResponse(url=url)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str, code: str, state: str | None = None) -> JSONResponse:
    """Finish OAuth sign-in. The state must come from a prior /auth/oauth/{provider} call."""
    redirect_url = str(request.url_for("oauth_callback", provider=provider))
    session = await _service(request).handle_oauth_callback(provider, code, redirect_url, state)
    return _session_response(session)
