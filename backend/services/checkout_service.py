"""Checkout Session Issuer - eligibility checks in front of Stripe checkout.

Checks run in a fixed order and each failure is distinct:
1. price id present and on the allow-list
2. profile exists
3. a tier has been selected
4. KYC approved
5. price id matches the selected tier
"""
import logging
from typing import Optional, Dict, Any

from database import database
from models import KycStatus
from services.plan_registry import plan_registry
from services.stripe_service import stripe_service

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    """Checkout precondition failure with the HTTP status it maps to."""

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message

    def to_detail(self) -> Dict[str, str]:
        return {"error": self.message, "message": self.message, "code": self.code}


async def create_checkout_session_for_user(
    user_id: str,
    price_id: Optional[str],
    origin_url: Optional[str] = None,
) -> Dict[str, Any]:
    if not price_id:
        raise CheckoutError(400, "MISSING_PRICE_ID", "Price ID is required")
    if not plan_registry.is_valid_price_id(price_id):
        logger.warning(f"Checkout rejected for user {user_id}: invalid price id {price_id}")
        raise CheckoutError(400, "INVALID_PRICE_ID", "Invalid price ID")

    db = database.get_db()
    profile = await db.profiles.find_one({"user_id": user_id}, {"_id": 0})
    if not profile:
        raise CheckoutError(404, "PROFILE_NOT_FOUND", "Profile not found")

    tier = plan_registry.resolve_tier(profile.get("selected_subscription_tier"))
    if tier is None:
        raise CheckoutError(400, "NO_TIER_SELECTED", "Please select a subscription tier first")

    if profile.get("kyc_status") != KycStatus.APPROVED.value:
        logger.info(f"Checkout rejected for user {user_id}: kyc_status={profile.get('kyc_status')}")
        raise CheckoutError(403, "KYC_NOT_APPROVED", "Identity verification must be approved before checkout")

    price_tier = plan_registry.get_tier_from_price_id(price_id)
    if price_tier != tier:
        # Shares follow the selected tier, so the charged price must be that tier's price
        logger.warning(
            f"Checkout rejected for user {user_id}: price_tier={price_tier.value} selected={tier.value}"
        )
        raise CheckoutError(400, "PRICE_TIER_MISMATCH", "Price does not match the selected subscription tier")

    customer_id = await stripe_service.get_or_create_customer(profile)
    return await stripe_service.create_embedded_checkout_session(
        user_id=user_id,
        customer_id=customer_id,
        price_id=price_id,
        tier=tier,
        origin_url=origin_url,
    )
