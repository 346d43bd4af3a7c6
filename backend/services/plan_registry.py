"""Subscription tier registry - single source of truth for tier definitions.

This is the AUTHORITATIVE source for:
- Tier codes
- Stripe price ID allow-list (one recurring price per tier)
- Equity shares granted per billing period
- Stripe subscription status -> internal status mapping

Tier Structure:
- starter:  5 shares per period
- plus:    10 shares per period
- pro:     20 shares per period
- max:     40 shares per period
"""
from typing import Dict, Optional, Union
import os
import logging

from models import SubscriptionTier, SubscriptionStatus

logger = logging.getLogger(__name__)


# ============================================================================
# EQUITY GRANT AMOUNTS
# ============================================================================
SIGNUP_BONUS_SHARES = 100
REFERRAL_RECEIVED_SHARES = 25
REFERRAL_GIVEN_SHARES = 50

TIER_SHARES: Dict[SubscriptionTier, int] = {
    SubscriptionTier.STARTER: 5,
    SubscriptionTier.PLUS: 10,
    SubscriptionTier.PRO: 20,
    SubscriptionTier.MAX: 40,
}


# ============================================================================
# STRIPE PRICE ID MAPPINGS - Production Price IDs, overridable per environment
# ============================================================================
DEFAULT_PRICE_IDS: Dict[SubscriptionTier, str] = {
    SubscriptionTier.STARTER: "price_1SMZj7CslnCo4qXAAyDoL4zr",
    SubscriptionTier.PLUS: "price_1SMZkGCslnCo4qXA5ndkqNt2",
    SubscriptionTier.PRO: "price_1SMZkdCslnCo4qXA1RssoO41",
    SubscriptionTier.MAX: "price_1SMZmHCslnCo4qXAmFuGxIqq",
}


def _load_price_ids() -> Dict[SubscriptionTier, str]:
    return {
        tier: os.getenv(f"STRIPE_PRICE_{tier.value.upper()}", default)
        for tier, default in DEFAULT_PRICE_IDS.items()
    }


# ============================================================================
# SUBSCRIPTION STATUS MAPPING
# ============================================================================
STRIPE_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.PENDING,
}


# ============================================================================
# PLAN REGISTRY SERVICE
# ============================================================================
class PlanRegistryService:
    """Central service for tier, price and status lookups."""

    def __init__(self):
        self.price_ids = _load_price_ids()
        self._price_to_tier = {price: tier for tier, price in self.price_ids.items()}

    # -------------------------------------------------------------------------
    # Tiers
    # -------------------------------------------------------------------------

    def resolve_tier(self, value: Optional[str]) -> Optional[SubscriptionTier]:
        """Parse a tier string (case-insensitive). Returns None when unknown."""
        if not value:
            return None
        try:
            return SubscriptionTier(str(value).strip().lower())
        except ValueError:
            return None

    def get_tier_shares(self, tier: Union[SubscriptionTier, str]) -> int:
        """Shares granted per billing period for a tier. Raises ValueError when unknown."""
        resolved = tier if isinstance(tier, SubscriptionTier) else self.resolve_tier(tier)
        if resolved is None:
            raise ValueError(f"Unknown subscription tier: {tier}")
        return TIER_SHARES[resolved]

    # -------------------------------------------------------------------------
    # Stripe Price ID Mappings
    # -------------------------------------------------------------------------

    def is_valid_price_id(self, price_id: Optional[str]) -> bool:
        """Check if a price_id is one of the four recognised subscription prices."""
        return bool(price_id) and price_id in self._price_to_tier

    def get_tier_from_price_id(self, price_id: str) -> Optional[SubscriptionTier]:
        return self._price_to_tier.get(price_id)

    # -------------------------------------------------------------------------
    # Subscription Status Mapping
    # -------------------------------------------------------------------------

    def map_subscription_status(self, stripe_status: Optional[str]) -> str:
        """
        Map Stripe subscription status to the internal status.

        active, trialing -> active
        past_due, unpaid -> past_due
        canceled, incomplete_expired -> cancelled
        incomplete -> pending
        anything else is stored as-is
        """
        if not stripe_status:
            return SubscriptionStatus.PENDING.value
        mapped = STRIPE_STATUS_MAP.get(stripe_status.lower())
        if mapped is None:
            logger.warning(f"Unmapped Stripe subscription status stored as-is: {stripe_status}")
            return stripe_status
        return mapped.value


# Singleton instance
plan_registry = PlanRegistryService()
