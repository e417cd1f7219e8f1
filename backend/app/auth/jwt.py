"""Bearer token verification.

Tokens are issued by the platform's auth service and signed with the shared
``JWT_SECRET_KEY``. Claims used here: ``sub`` (user UUID), ``type``
(``access`` or ``refresh``) and ``ver`` (the user's ``token_version`` when
the token was minted). The minting helpers follow the same layout and are
used by tests and operator scripts.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.config import settings


class InvalidToken(Exception):
    """Token is malformed, expired, badly signed or of the wrong type."""


@dataclass(frozen=True)
class AccessClaims:
    user_id: uuid.UUID
    token_version: int
    expires_at: datetime


def _encode(claims: dict, token_type: str, lifetime: timedelta) -> str:
    issued_at = datetime.now(timezone.utc)
    payload = {**claims, "iat": issued_at, "exp": issued_at + lifetime, "type": token_type}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    return _encode(data, "access", lifetime)


def create_refresh_token(data: dict, expires_delta: timedelta | None = None) -> str:
    lifetime = expires_delta or timedelta(days=settings.jwt_refresh_token_expire_days)
    return _encode(data, "refresh", lifetime)


def create_token_pair(user_id: str, token_version: int = 0) -> dict[str, str]:
    """Access and refresh tokens for ``user_id`` at ``token_version``.

    Bumping ``token_version`` on the user revokes every token minted with the
    old value.
    """
    claims = {"sub": user_id, "ver": token_version}
    return {
        "access_token": create_access_token(claims),
        "refresh_token": create_refresh_token(claims),
        "token_type": "bearer",
    }


def decode_token(token: str) -> dict:
    """Verify signature and expiry and return the raw claims.

    Raises:
        jose.JWTError: Invalid, expired or malformed token.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


def verify_access_token(token: str) -> AccessClaims:
    """Decode an access token into typed claims.

    Raises:
        InvalidToken: With a client-safe message; refresh tokens are refused.
    """
    try:
        payload = decode_token(token)
    except JWTError:
        raise InvalidToken("Could not validate credentials") from None

    if payload.get("type") != "access":
        raise InvalidToken("Invalid token type")

    try:
        user_id = uuid.UUID(str(payload["sub"]))
    except (KeyError, ValueError):
        raise InvalidToken("Could not validate credentials") from None

    return AccessClaims(
        user_id=user_id,
        token_version=int(payload.get("ver", 0)),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(tzinfo=None),
    )
