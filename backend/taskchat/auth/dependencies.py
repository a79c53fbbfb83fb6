"""FastAPI dependencies for request-level credential checks.

Usage:
    @router.get("/api/student/messages")
    async def history(identity: Identity = Depends(require_role(Role.STUDENT))):
        ...

Status codes:
    401: no bearer token in the Authorization header
    403: token invalid/expired, or the identity has the wrong role
"""
import logging
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException

from .schemas import Identity, Role
from .service import InvalidTokenError, get_verifier

logger = logging.getLogger(__name__)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    """Resolve the caller's Identity from the bearer credential."""
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="No token provided")

    verifier = get_verifier()
    if verifier is None:
        logger.error("[Auth] Token verifier not configured")
        raise HTTPException(status_code=503, detail="Authentication unavailable")

    try:
        return verifier.verify(token)
    except InvalidTokenError as e:
        logger.info("[Auth] Rejected request credential: %s", e)
        raise HTTPException(status_code=403, detail="Invalid or expired token")


def require_role(role: Role) -> Callable[..., Identity]:
    """Build a dependency that only admits identities with ``role``."""

    async def _check(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role != role:
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Only {role.value}s can access this endpoint.",
            )
        return identity

    return _check
