"""
services/coach/router.py
Coach payout onboarding: create the processor's Express account and hand
back an onboarding link, then sync the onboarding state on return.
A connected account is what lets bookings with this coach take payment.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.availability.router import get_coach_profile
from services.payment.gateway import PaymentGateway, get_payment_gateway
from shared.middleware.auth import get_current_user
from shared.models.models import CoachProfile, User
from shared.schemas.schemas import ConnectAccountLinkResponse, ConnectStatusResponse
from shared.utils.errors import UpstreamNotConfigured

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coaches/me", tags=["Coaches"])


@router.post("/connect-account-link", response_model=ConnectAccountLinkResponse)
async def create_connect_account_link(
    current_user: User = Depends(get_current_user),
    profile: CoachProfile = Depends(get_coach_profile),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Create the payout account on first use, then return a fresh onboarding link."""
    if not gateway.enabled:
        raise UpstreamNotConfigured(
            "Payments not configured",
            detail="Set STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET, then restart the API.",
        )

    if not profile.connect_account_id:
        profile.connect_account_id = await gateway.create_connect_account(
            current_user.email, str(profile.id)
        )
        # Keep the account even if the link below fails
        await db.commit()
        logger.info(f"Created payout account {profile.connect_account_id} for coach {profile.id}")

    url = await gateway.create_account_link(
        profile.connect_account_id,
        refresh_url=settings.connect_onboarding_url("refresh"),
        return_url=settings.connect_onboarding_url("return"),
    )
    return ConnectAccountLinkResponse(url=url)


@router.get("/connect-status", response_model=ConnectStatusResponse)
async def get_connect_status(
    profile: CoachProfile = Depends(get_coach_profile),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Called after the coach returns from onboarding."""
    if profile.connect_account_id and gateway.enabled:
        account = await gateway.retrieve_account(profile.connect_account_id)
        if account.onboarding_complete != profile.onboarding_complete:
            profile.onboarding_complete = account.onboarding_complete
            await db.commit()

    return ConnectStatusResponse(
        stripe_connect_account_id=profile.connect_account_id,
        stripe_onboarding_complete=profile.onboarding_complete,
    )
