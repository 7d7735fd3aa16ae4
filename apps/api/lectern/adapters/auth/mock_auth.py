"""Mock auth verifier for local development and tests."""

from lectern.adapters.auth.base import AuthVerificationError, TokenVerifier
from lectern.schemas.auth import AuthPrincipal


class MockTokenVerifier(TokenVerifier):
    """Accepts deterministic test tokens only.

    Expected token format:
    - ``test:<account_id>``
    - ``test:<account_id>:<role>``
    """

    def verify_token(self, token: str) -> AuthPrincipal:
        parts = token.split(":")
        if len(parts) not in (2, 3) or parts[0] != "test":
            raise AuthVerificationError("Invalid bearer token")

        account_id = parts[1].strip()
        role = parts[2].strip() if len(parts) == 3 else "member"
        if not account_id:
            raise AuthVerificationError("Bearer token missing account identity")
        if not role:
            raise AuthVerificationError("Bearer token missing role")

        return AuthPrincipal(account_id=account_id, role=role)


__all__ = ["MockTokenVerifier"]
