"""Token helpers shared by the API tests."""
from datetime import datetime, timedelta, timezone

import jwt

from app.core import config


ADMIN_SUBJECT = "admin-subject"


def make_token(subject: str, username: str | None = None, *, secret: str | None = None, expires_in: int = 3600) -> str:
    """Mint a bearer token the way the identity store would."""
    payload = {"sub": subject, "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in)}
    if username:
        payload["username"] = username
    return jwt.encode(payload, secret or config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def auth_headers(subject: str, username: str | None = None) -> dict:
    return {"Authorization": f"Bearer {make_token(subject, username)}"}
