"""
Authentication middleware for API endpoints.

JWT bearer tokens verified with PyJWT. The token subject is the user id and the
"role" claim carries the platform role (USER, ADMIN, AGENT, SUPPORT).
"""
import logging
from typing import Optional

import jwt  # PyJWT
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from servicehub import config
from servicehub.models.appointment import Actor, Role

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class TokenPayload:
    """Decoded JWT token payload."""
    def __init__(self, payload: dict):
        self.sub = payload.get("sub")  # Subject (user ID)
        self.role = payload.get("role", Role.USER.value)

    def __repr__(self) -> str:
        return f"TokenPayload(sub={self.sub}, role={self.role})"


def actor_from_claims(payload: TokenPayload) -> Actor:
    """Map token claims to an Actor. Unknown roles get no privileges."""
    try:
        role = Role(str(payload.role).upper())
    except ValueError:
        logger.warning(f"Unknown role {payload.role!r} for {payload.sub}, treating as USER")
        role = Role.USER
    return Actor(identity=str(payload.sub), role=role)


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[TokenPayload]:
    """
    Verify JWT token from Authorization header.

    Returns:
        TokenPayload if valid token provided, None if no token.

    Raises:
        HTTPException: For invalid or expired tokens.
    """
    if not credentials:
        return None

    try:
        payload = jwt.decode(
            credentials.credentials,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM]
        )

    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        raise HTTPException(
            status_code=401,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"}
        )

    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise HTTPException(
            status_code=401,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=401,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return TokenPayload(payload)


def require_auth(
    payload: Optional[TokenPayload] = Depends(verify_token)
) -> Actor:
    """
    Dependency that requires valid authentication and yields the caller.

    Usage:
        @router.get("/")
        async def endpoint(actor: Actor = Depends(require_auth)):
            return {"user_id": actor.identity}
    """
    if not payload:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return actor_from_claims(payload)
