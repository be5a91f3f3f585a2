"""
shared/utils/security.py
JWT creation and verification.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings


def create_access_token(
    user_id: Optional[str] = None,
    external_subject: Optional[str] = None,
    email: Optional[str] = None,
    extra: Optional[dict] = None,
) -> str:
    """
    Create a signed JWT access token.
    Either user_id (sub) or external_subject (ext_sub) identifies the caller.
    """
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": expire,
        "type": "access",
        **(extra or {}),
    }
    if user_id is not None:
        payload["sub"] = str(user_id)
    if external_subject is not None:
        payload["ext_sub"] = external_subject
    if email is not None:
        payload["email"] = email

    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    if not payload.get("sub") and not payload.get("ext_sub"):
        raise JWTError("Token has no subject")
    return payload
