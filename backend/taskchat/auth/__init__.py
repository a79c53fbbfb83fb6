"""Authentication module (JWT bearer credentials).

Turns access tokens issued at sign-in into an Identity (user id, role).

Services:
    - TokenVerifier: PyJWT-based verification.
    - get_identity / require_role: FastAPI dependencies for HTTP routes.
"""
from .schemas import Identity, Role
from .service import InvalidTokenError, TokenVerifier, get_verifier, set_verifier

__all__ = [
    "Identity",
    "InvalidTokenError",
    "Role",
    "TokenVerifier",
    "get_verifier",
    "set_verifier",
]
