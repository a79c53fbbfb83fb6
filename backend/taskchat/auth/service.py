"""Access token verification.

Tokens are HS256 JWTs issued by the main application at sign-in. The
messaging layer only needs to turn a token into an Identity:

    verifier = TokenVerifier(secret_key=config.jwt_secret())
    identity = verifier.verify(token)   # raises InvalidTokenError

Two claim names for the user id exist in the wild: ``id`` (socket tokens)
and ``userId`` (GraphQL tokens). Both are accepted, ``id`` first.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from .schemas import Identity, Role

logger = logging.getLogger(__name__)

_ID_CLAIMS = ("id", "userId")


class InvalidTokenError(Exception):
    """Token is expired, malformed, badly signed or lacks required claims."""


class TokenVerifier:
    """Validates bearer credentials and yields an Identity."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", leeway: int = 0):
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._secret_key = secret_key
        self.algorithm = algorithm
        self.leeway = leeway

    def decode(self, token: str) -> Dict[str, Any]:
        """Decode and verify a token, returning its raw claims.

        Raises:
            InvalidTokenError: If PyJWT rejects the token.
        """
        try:
            return jwt.decode(
                token,
                self._secret_key,
                algorithms=[self.algorithm],
                leeway=self.leeway,
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("Token expired") from exc
        except jwt.PyJWTError as exc:
            raise InvalidTokenError(f"Invalid token: {exc}") from exc

    def verify(self, token: str) -> Identity:
        """Verify a token and extract the identity it carries.

        Args:
            token: Encoded JWT.

        Returns:
            Identity with integer id and role.

        Raises:
            InvalidTokenError: If the token fails verification or its claims
                do not describe a known role and integer user id.
        """
        claims = self.decode(token)

        raw_id = next((claims[k] for k in _ID_CLAIMS if claims.get(k) is not None), None)
        if raw_id is None or isinstance(raw_id, bool):
            raise InvalidTokenError("Token has no user id claim")
        try:
            user_id = int(raw_id)
        except (TypeError, ValueError) as exc:
            raise InvalidTokenError("Token user id is not an integer") from exc

        try:
            role = Role(claims.get("role"))
        except ValueError as exc:
            raise InvalidTokenError(f"Unknown role in token: {claims.get('role')!r}") from exc

        return Identity(id=user_id, role=role)

    def issue(self, identity: Identity, expires_in: Optional[timedelta] = None) -> str:
        """Mint a token for an identity (local tooling and tests)."""
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "id": identity.id,
            "role": identity.role.value,
            "iat": now,
            "exp": now + (expires_in or timedelta(hours=24)),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self.algorithm)


# ---------------------------------------------------------------------------
# Process-wide verifier (set during app startup)
# ---------------------------------------------------------------------------

_verifier: Optional[TokenVerifier] = None


def get_verifier() -> Optional[TokenVerifier]:
    return _verifier


def set_verifier(verifier: Optional[TokenVerifier]) -> None:
    global _verifier
    _verifier = verifier
