"""
shared/middleware/auth.py
FastAPI dependency functions for authentication.
Bearer JWTs are validated here; in development an X-Dev-User-Id header
may stand in for a token.
"""

import logging
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from shared.models.models import User
from shared.utils.security import verify_access_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Unauthorized") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _load_user(db: AsyncSession, user_id: str) -> Optional[User]:
    try:
        uid = uuid.UUID(str(user_id))
    except ValueError:
        return None
    result = await db.execute(select(User).where(User.id == uid))
    return result.scalar_one_or_none()


async def _upsert_external_user(db: AsyncSession, payload: dict) -> User:
    """First sight of an external identity creates the user row."""
    sub = payload["ext_sub"]
    email = (payload.get("email") or "").strip().lower()
    name = payload.get("name")

    result = await db.execute(select(User).where(User.external_subject == sub))
    user = result.scalar_one_or_none()
    if user is None:
        # users.email is unique, so never share a placeholder
        user = User(
            email=email or f"unknown-{sub}@placeholder.local",
            external_subject=sub,
            name=name,
        )
        db.add(user)
    else:
        if email:
            user.email = email
        if name:
            user.name = name
    await db.flush()
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_dev_user_id: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the calling User from the dev header or the bearer token."""
    if x_dev_user_id and settings.dev_auth_allowed:
        user = await _load_user(db, x_dev_user_id)
        if user:
            return user

    if not credentials:
        raise _unauthorized()

    try:
        payload = verify_access_token(credentials.credentials)
    except JWTError:
        raise _unauthorized("Invalid token")

    if payload.get("sub"):
        user = await _load_user(db, payload["sub"])
    else:
        user = await _upsert_external_user(db, payload)

    if not user:
        raise _unauthorized("User not found")
    return user
