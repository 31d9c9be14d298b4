"""Bearer token verification.

Tokens are HS256 JWTs whose ``sub`` claim is the owner's user id. They are
issued by the authentication service (OTP login); ``create_access_token`` is
kept for the development CLI and tests.
"""

from datetime import UTC, datetime, timedelta

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from tracelens_service.api.dependencies import get_app_settings
from tracelens_service.core.config import Settings
from tracelens_service.core.logging import get_logger
from tracelens_service.db.models import User
from tracelens_service.db.session import get_db

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class InvalidTokenError(Exception):
    """Raised when a token cannot be decoded or carries no usable subject."""

    pass


def create_access_token(
    owner_id: int, settings: Settings, expires_minutes: int | None = None
) -> str:
    """Sign a token for ``owner_id``.

    Args:
        owner_id: User id placed in the ``sub`` claim.
        settings: Provides the signing key, algorithm and default lifetime.
        expires_minutes: Override for the token lifetime.

    Returns:
        Encoded JWT.
    """
    now = datetime.now(UTC)
    lifetime = timedelta(minutes=expires_minutes or settings.jwt_expire_minutes)
    claims = {"sub": str(owner_id), "iat": now, "exp": now + lifetime}
    token: str = jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return token


def decode_access_token(token: str, settings: Settings) -> int:
    """Verify a token and return the owner id it was issued for.

    Raises:
        InvalidTokenError: If the token is expired, tampered or lacks a numeric subject.
    """
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require_sub": True, "require_exp": True},
        )
    except ExpiredSignatureError:
        raise InvalidTokenError("Token has expired") from None
    except JWTError as e:
        raise InvalidTokenError(f"Token is invalid: {e}") from None

    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise InvalidTokenError("Token subject is not a user id") from None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_owner_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> int:
    """Resolve the authenticated owner from the Authorization header.

    Raises:
        HTTPException: 401 when the header is missing, the token is invalid,
            or the user no longer exists.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Not authenticated")

    try:
        owner_id = decode_access_token(credentials.credentials, settings)
    except InvalidTokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise _unauthorized(str(e)) from None

    if await db.get(User, owner_id) is None:
        raise _unauthorized("User not found")

    return owner_id
