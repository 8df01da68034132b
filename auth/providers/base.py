"""
auth/providers/base.py -- The contract every auth provider implements.

Required operations are abstract. The optional ones (verify_email,
resend_verification_email, OAuth hooks, update_user, delete_user) default to
raising ProviderError 501 so the orchestrator can call them uniformly and a
provider only overrides what it supports.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from auth.errors import ProviderError
from auth.models import AuthSession, AuthUser, PasswordUpdate, TokenVerification


class AuthProvider(ABC):
    name: str

    @abstractmethod
    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> AuthSession: ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthSession: ...

    @abstractmethod
    async def sign_out(self, access_token: str) -> None: ...

    @abstractmethod
    async def refresh_session(self, refresh_token: str) -> AuthSession: ...

    @abstractmethod
    async def verify_token(self, access_token: str) -> TokenVerification: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> AuthUser | None: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> AuthUser | None: ...

    @abstractmethod
    async def reset_password_request(self, email: str) -> None: ...

    @abstractmethod
    async def reset_password(self, update: PasswordUpdate, user_id: str | None = None) -> str | None:
        """Apply a token reset or a current-password change; return the affected user id when known."""

    # ------------------------------------------------------------------
    # Optional operations
    # ------------------------------------------------------------------

    async def verify_email(self, token: str) -> AuthUser:
        raise self._unsupported("Email verification")

    async def resend_verification_email(self, email: str, *, authenticated: bool = False) -> None:
        raise self._unsupported("Resending verification email")

    async def get_oauth_url(self, oauth_provider: str, redirect_url: str, state: str) -> str:
        raise self._unsupported("OAuth sign-in")

    async def handle_oauth_callback(self, oauth_provider: str, code: str, redirect_url: str) -> AuthSession:
        raise self._unsupported("OAuth sign-in")

    async def update_user(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> AuthUser:
        raise self._unsupported("Updating users")

    async def delete_user(self, user_id: str) -> None:
        raise self._unsupported("Deleting users")

    def _unsupported(self, what: str) -> ProviderError:
        return ProviderError(f"{what} is not supported by the {self.name} provider", status_code=501)
