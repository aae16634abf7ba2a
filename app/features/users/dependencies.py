"""
FastAPI dependencies for authentication.
"""
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions.store import EntityStore
from app.features.users.auth import Principal, verify_jwt_token
from app.utils import get_logger


log = get_logger(__name__)
security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Principal:
    """
    Get the authenticated principal from the bearer token.

    This dependency:
    1. Extracts JWT from Authorization header (401 when missing)
    2. Verifies it (401 on failure)
    3. Maps the ``sub`` claim to a local user by credential_ref, falling back
       to the ``username`` claim

    A valid token that maps to no user still yields a principal, with
    ``user_id`` left empty; authorization checks deny it.

    Usage:
        @router.get("/me")
        async def get_me(principal: Principal = Depends(get_current_principal)):
            return principal
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_jwt_token(credentials.credentials)
    subject = str(payload["sub"])
    username = payload.get("username")

    user = await EntityStore(db).find_user(credential_ref=subject, username=username)
    if user is None:
        log.info("Token subject %s does not match any user", subject)
        return Principal(subject=subject, username=username)

    return Principal(subject=subject, username=user.username, user_id=user.id)
