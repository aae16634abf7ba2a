"""
Bearer token verification.

Tokens are issued by the external identity store. This module only checks
them and extracts the subject; it never sees a password.
"""
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import HTTPException, status

from app.core import config


@dataclass(frozen=True)
class Principal:
    """An authenticated caller. ``user_id`` is None when no user matches the token."""
    subject: str
    username: Optional[str] = None
    user_id: Optional[str] = None


def verify_jwt_token(token: str) -> dict:
    """
    Verify a JWT from the identity store and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload

    Raises:
        HTTPException: 401 if the token is invalid, expired or has no subject
    """
    try:
        payload = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload
