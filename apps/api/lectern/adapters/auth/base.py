"""Authentication provider interfaces."""

from abc import ABC, abstractmethod

from lectern.schemas.auth import AuthPrincipal


class AuthVerificationError(Exception):
    """Raised when a bearer token cannot be mapped to a quota account."""


class TokenVerifier(ABC):
    """Resolves a bearer token into the account that will be charged."""

    @abstractmethod
    def verify_token(self, token: str) -> AuthPrincipal:
        """Verify token and return the principal."""


__all__ = ["AuthVerificationError", "TokenVerifier"]
