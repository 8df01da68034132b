"""auth/providers/ -- Interchangeable identity backends behind one contract."""

from auth.providers.base import AuthProvider
from auth.providers.local import LocalCredentialProvider
from auth.providers.remote import RemoteVerifyProvider

__all__ = ["AuthProvider", "LocalCredentialProvider", "RemoteVerifyProvider"]
