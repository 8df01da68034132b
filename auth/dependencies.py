"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

create_auth_gate(service) builds the request gate returned by
AuthService.create_auth_middleware(). The gate:
  1. Extracts the Authorization: Bearer <token> header (missing -> 401).
  2. Verifies the token through the service (provider scan).
  3. Re-loads the live user (deleted -> 401) and rejects banned users (403).
  4. Attaches the user to request.state.user and returns it.

Any verification failure or exception maps to the same generic 401 --
verification internals are logged, never returned to the client.

get_current_user() is the route-level dependency: it runs the gate stored on
app.state by the lifespan handler.

Layer rule: auth/dependencies.py may import from fastapi (for
HTTPException/Request) because this module is part of the FastAPI dependency
injection system. No imports from api/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

from auth.models import AuthUser

if TYPE_CHECKING:
    from auth.service import AuthService

logger = logging.getLogger("authcore.auth")

_UNAUTHORIZED = {"code": "unauthorized", "message": "Authentication required."}


def get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def create_auth_gate(service: AuthService):
    """Return an async FastAPI dependency that authenticates the request."""

    async def auth_gate(request: Request) -> AuthUser:
        token = get_bearer_token(request)
        if token is None:
            raise HTTPException(
                status_code=401,
                detail={"code": "unauthorized", "message": "Missing or invalid authorization header."},
            )

        try:
            verification = await service.verify_token(token)
        except Exception:
            logger.warning("Token verification error", exc_info=True)
            raise HTTPException(status_code=401, detail=_UNAUTHORIZED) from None

        if not verification.valid or verification.user is None:
            raise HTTPException(status_code=401, detail=_UNAUTHORIZED)

        user = await service.get_user(verification.user.id)
        if user is None:
            raise HTTPException(status_code=401, detail=_UNAUTHORIZED)
        if user.is_banned:
            raise HTTPException(
                status_code=403,
                detail={"code": "account_suspended", "message": "This account has been suspended."},
            )

        request.state.user = user
        return user

    return auth_gate


async def get_current_user(request: Request) -> AuthUser:
    """Require authentication. Raises HTTP 401/403 via the configured gate.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: AuthUser = Depends(get_current_user)): ...
    """
    return await request.app.state.auth_gate(request)
