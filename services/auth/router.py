"""
services/auth/router.py
Current-user endpoints plus development-only signup.
Tokens are issued by the identity provider; see shared/middleware/auth.py.
"""

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import get_db
from config.settings import settings
from shared.middleware.auth import get_current_user
from shared.models.models import User, UserRole
from shared.schemas.schemas import (
    DevSignupRequest,
    DevUserResponse,
    MeResponse,
    RoleUpdateRequest,
    RoleUpdateResponse,
)
from shared.utils.errors import NotFoundError, ValidationError

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _require_dev_auth() -> None:
    if not settings.dev_auth_allowed:
        raise NotFoundError("Not available")


@router.get("/me", response_model=MeResponse, summary="Get current user")
async def get_me(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(User).options(selectinload(User.coach_profile)).where(User.id == current_user.id)
    )
    user = result.scalar_one()

    # Coaches created before roles existed
    if user.role is None and user.coach_profile is not None:
        user.role = UserRole.COACH
        await db.commit()
    return user


@router.patch("/me", response_model=RoleUpdateResponse, summary="Set role once after signup")
async def set_role(
    data: RoleUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if current_user.role is not None:
        raise ValidationError("role already set")
    current_user.role = UserRole(data.role)
    await db.commit()
    return RoleUpdateResponse(role=current_user.role)


# ── Development only ──────────────────────────────────────────

@router.get("/dev-users", response_model=List[DevUserResponse], include_in_schema=False)
async def list_dev_users(db: AsyncSession = Depends(get_db)):
    _require_dev_auth()
    result = await db.execute(select(User).order_by(User.created_at))
    return result.scalars().all()


@router.post(
    "/dev-signup",
    response_model=DevUserResponse,
    status_code=status.HTTP_201_CREATED,
    include_in_schema=False,
)
async def dev_signup(data: DevSignupRequest, db: AsyncSession = Depends(get_db)):
    """Create (or return) a user by email. Pair with the X-Dev-User-Id header."""
    _require_dev_auth()
    email = data.email.strip().lower()
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        name = (data.name or "").strip() or None
        user = User(email=email, name=name)
        db.add(user)
        await db.commit()
    return user
