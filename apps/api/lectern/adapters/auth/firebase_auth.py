"""Firebase Auth token verifier adapter."""

from __future__ import annotations

from lectern.adapters.auth.base import AuthVerificationError, TokenVerifier
from lectern.schemas.auth import AuthPrincipal

_ISSUER_PREFIX = "https://securetoken.google.com/"


class FirebaseTokenVerifier(TokenVerifier):
    """Verifies Firebase ID tokens; the Firebase uid is the quota account id."""

    def __init__(self, project_id: str | None, audience: str | None) -> None:
        self._project_id = project_id
        self._audience = audience

    def verify_token(self, token: str) -> AuthPrincipal:
        try:
            import firebase_admin
            from firebase_admin import auth as firebase_auth
        except ImportError as exc:  # pragma: no cover - optional extra
            raise AuthVerificationError("Firebase auth verifier is unavailable") from exc

        if not firebase_admin._apps:
            options = {"projectId": self._project_id} if self._project_id else None
            firebase_admin.initialize_app(options=options)

        try:
            decoded = firebase_auth.verify_id_token(token, check_revoked=True)
        except Exception as exc:  # pragma: no cover - provider exception surface
            raise AuthVerificationError("Invalid bearer token") from exc

        if self._audience and decoded.get("aud") != self._audience:
            raise AuthVerificationError("Invalid bearer token audience")

        if self._project_id:
            expected_issuer = f"{_ISSUER_PREFIX}{self._project_id}"
            if decoded.get("iss") != expected_issuer:
                raise AuthVerificationError("Invalid bearer token issuer")

        account_id = str(decoded.get("uid") or decoded.get("sub") or "").strip()
        if not account_id:
            raise AuthVerificationError("Bearer token missing account identity")
        role = str(decoded.get("role") or "member").strip() or "member"
        return AuthPrincipal(account_id=account_id, role=role)


__all__ = ["FirebaseTokenVerifier"]
