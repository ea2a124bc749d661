"""
JWT token creation and validation.

The token subject (`sub`) is the user id that RBACEngine and MFAService
key their state by. Tokens carry no permissions; every check goes back to
the RBAC engine so grants and denials apply immediately.
"""
import logging
import uuid
from datetime import timedelta

import jwt
from flask import request

from config.settings import get_settings
from core.timestamps import now as utcnow

logger = logging.getLogger(__name__)


def create_token(user_id: str, expires_in: timedelta = None) -> str:
    """Create a JWT access token.

    Args:
        user_id: Principal id, stored as `sub`
        expires_in: Lifetime override (defaults to JWT_EXPIRATION_HOURS)

    Returns:
        Encoded JWT access token
    """
    auth = get_settings().auth
    now = utcnow()
    payload = {
        "sub": user_id,
        "jti": str(uuid.uuid4()),
        "type": "access",
        "iat": now,
        "exp": now + (expires_in if expires_in is not None else timedelta(hours=auth.jwt_expiration_hours)),
    }
    return jwt.encode(payload, auth.jwt_secret.get_secret_value(), algorithm=auth.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    """Decode and validate a JWT access token.

    Returns:
        Token payload dict or None if invalid/expired
    """
    auth = get_settings().auth
    try:
        payload = jwt.decode(token, auth.jwt_secret.get_secret_value(), algorithms=[auth.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        return None
    except jwt.InvalidTokenError:
        return None

    # Reject refresh or other token types
    if payload.get("type") != "access" or not payload.get("sub"):
        return None
    return payload


def get_token_from_request() -> str | None:
    """Extract the bearer token from the Authorization header."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None
