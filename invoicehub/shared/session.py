"""Explicit user session passed to every lifecycle operation."""

import logging
from datetime import UTC, datetime, timedelta

import jwt
from pydantic import BaseModel

from invoicehub.shared.config import Settings
from invoicehub.shared.errors import MissingSessionError

logger = logging.getLogger(__name__)


class UserSession(BaseModel):
    """Authenticated caller.

    Attributes:
        user_id: Identifier of the signed-in user (JWT 'sub' claim)
        email: Email address, when the token carries one
    """

    user_id: str
    email: str | None = None


def require_session(session: UserSession | None) -> UserSession:
    """Return the session or raise if nobody is signed in."""
    if session is None or not session.user_id.strip():
        raise MissingSessionError()
    return session


def decode_access_token(token: str, settings: Settings) -> UserSession:
    """Verify a bearer token and build the session it identifies.

    Args:
        token: Encoded JWT
        settings: Provides the signing secret, algorithm and expected audience

    Returns:
        UserSession for the token subject

    Raises:
        MissingSessionError: Token invalid, expired, or verification not configured
    """
    if not settings.auth_jwt_secret:
        logger.warning("Rejecting bearer token: APP_AUTH_JWT_SECRET is not configured")
        raise MissingSessionError()

    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
            options={"verify_aud": settings.auth_jwt_audience is not None},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejecting expired access token")
        raise MissingSessionError() from None
    except jwt.PyJWTError as e:
        logger.info(f"Rejecting invalid access token: {e}")
        raise MissingSessionError() from None

    subject = payload.get("sub")
    if not subject:
        raise MissingSessionError()
    return UserSession(user_id=str(subject), email=payload.get("email"))


def create_access_token(
    settings: Settings,
    user_id: str,
    email: str | None = None,
    expires_in: timedelta = timedelta(hours=8),
) -> str:
    """Issue a token that decode_access_token accepts for user_id.

    Raises:
        ValueError: If no signing secret is configured
    """
    if not settings.auth_jwt_secret:
        raise ValueError("Set APP_AUTH_JWT_SECRET before issuing tokens")

    claims: dict[str, object] = {
        "sub": user_id,
        "exp": datetime.now(UTC) + expires_in,
    }
    if email:
        claims["email"] = email
    if settings.auth_jwt_audience:
        claims["aud"] = settings.auth_jwt_audience
    return jwt.encode(claims, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)
