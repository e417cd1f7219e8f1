"""FastAPI dependencies that resolve the bearer token to a ``User``."""

import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.jwt import InvalidToken, verify_access_token
from app.database import get_db
from app.models.user import User

logger = logging.getLogger(__name__)

# Missing Authorization header is rejected by FastAPI before we run
_bearer_scheme = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Return the user named by a valid, unrevoked access token.

    Raises:
        HTTPException 401: Bad or refresh token, unknown user, or a token
            minted before the user's last ``token_version`` bump.
    """
    try:
        claims = verify_access_token(credentials.credentials)
    except InvalidToken as e:
        raise _unauthorized(str(e)) from None

    user = await db.get(User, claims.user_id)
    if user is None:
        raise _unauthorized("Could not validate credentials")

    if claims.token_version != user.token_version:
        logger.info("Rejected revoked token for user %s", user.id)
        raise _unauthorized("Token has been revoked")

    return user


async def get_current_active_user(user: User = Depends(get_current_user)) -> User:
    """Raises HTTPException 403 for deactivated or erased accounts."""
    if not user.is_active or user.erased_at is not None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")
    return user


async def get_current_admin(user: User = Depends(get_current_active_user)) -> User:
    """Raises HTTPException 403 unless the user has the admin role."""
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
