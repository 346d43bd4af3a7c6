"""Stripe Service - customer, embedded checkout and subscription calls.

This service handles:
- Reusing or lazily creating the Stripe customer for a profile
- Creating embedded checkout sessions for the selected tier
- Reading the live subscription period end
- Cancelling at period end

Key Principles:
- Price ids come from plan_registry
- Metadata always carries user_id and tier for webhook tracing
"""
import stripe
import os
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from database import database
from models import SubscriptionTier, AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

DEFAULT_ORIGIN = "http://localhost:5173"


def get_frontend_origin(request_origin: Optional[str] = None) -> str:
    """Base URL for the checkout return page: request Origin, then FRONTEND_ORIGIN, then local dev."""
    base = (request_origin or os.getenv("FRONTEND_ORIGIN") or DEFAULT_ORIGIN).strip().rstrip("/")
    if not base.startswith("http://") and not base.startswith("https://"):
        return DEFAULT_ORIGIN
    return base


def _timestamp_to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def extract_period_end(subscription: Any) -> Optional[datetime]:
    """current_period_end from a subscription object or webhook payload.

    Newer API versions carry it on the subscription items instead of the
    subscription itself; both are read.
    """
    if not subscription:
        return None
    period_end = subscription.get("current_period_end")
    if period_end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _timestamp_to_datetime(period_end)


class StripeService:
    """Stripe billing operations service."""

    def _require_api_key(self):
        if not (stripe.api_key or "").strip():
            raise ValueError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")

    async def get_or_create_customer(self, profile: Dict[str, Any]) -> str:
        """Return a live customer id for the profile, creating and storing one when needed."""
        self._require_api_key()
        user_id = profile["user_id"]
        existing_id = profile.get("billing_customer_id")

        if existing_id:
            try:
                customer = stripe.Customer.retrieve(existing_id)
                if not getattr(customer, "deleted", False):
                    logger.info(f"Reusing Stripe customer {existing_id} for user {user_id}")
                    return existing_id
                logger.info(f"Stripe customer {existing_id} was deleted - creating a new one for user {user_id}")
            except stripe.error.InvalidRequestError as e:
                logger.warning(f"Stored Stripe customer {existing_id} not retrievable for user {user_id}: {e}")

        params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if profile.get("email"):
            params["email"] = profile["email"]
        customer = stripe.Customer.create(**params)

        db = database.get_db()
        await db.profiles.update_one(
            {"user_id": user_id},
            {"$set": {
                "billing_customer_id": customer.id,
                "updated_at": datetime.now(timezone.utc),
            }}
        )
        logger.info(f"Stripe customer {customer.id} created for user {user_id}")
        return customer.id

    async def create_embedded_checkout_session(
        self,
        user_id: str,
        customer_id: str,
        price_id: str,
        tier: SubscriptionTier,
        origin_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create an embedded subscription checkout session.

        Returns:
            Dict with clientSecret, customerId and sessionId
        """
        self._require_api_key()
        base = get_frontend_origin(origin_url)
        metadata = {
            "user_id": user_id,  # MANDATORY for webhook
            "tier": tier.value,
        }

        session = stripe.checkout.Session.create(
            ui_mode="embedded",
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            return_url=f"{base}/checkout-success?session_id={{CHECKOUT_SESSION_ID}}",
            metadata={**metadata, "created_via": "embedded_checkout"},
            subscription_data={"metadata": metadata},
        )

        logger.info(f"Checkout session created for user {user_id}: {session.id} tier={tier.value}")
        await create_audit_log(
            action=AuditAction.CHECKOUT_SESSION_CREATED,
            user_id=user_id,
            actor=user_id,
            resource_type="checkout_session",
            resource_id=session.id,
            metadata={"tier": tier.value, "price_id": price_id, "customer_id": customer_id},
        )

        return {
            "clientSecret": session.client_secret,
            "customerId": customer_id,
            "sessionId": session.id,
        }

    def get_subscription_period_end(self, subscription_id: Optional[str]) -> Optional[datetime]:
        """Fetch the live subscription's current period end. Failures log and return None."""
        if not subscription_id:
            return None
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except Exception as e:
            logger.warning(f"Could not fetch subscription {subscription_id} for period end: {e}")
            return None
        return extract_period_end(subscription)

    async def cancel_at_period_end(self, user_id: str) -> Dict[str, Any]:
        """
        Schedule cancellation of the user's subscription at the end of the period.

        Raises:
            LookupError: no profile
            ValueError: no subscription on the profile
            stripe.error.StripeError: Stripe rejected the change
        """
        db = database.get_db()
        profile = await db.profiles.find_one({"user_id": user_id}, {"_id": 0})
        if not profile:
            raise LookupError("Profile not found")

        subscription_id = profile.get("billing_subscription_id")
        if not subscription_id:
            raise ValueError("No active subscription found")

        self._require_api_key()
        subscription = stripe.Subscription.modify(
            subscription_id,
            cancel_at_period_end=True
        )
        period_end = extract_period_end(subscription) or profile.get("subscription_period_end")

        await db.profiles.update_one(
            {"user_id": user_id},
            {"$set": {
                "cancel_at_period_end": True,
                "subscription_period_end": period_end,
                "updated_at": datetime.now(timezone.utc),
            }}
        )

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            user_id=user_id,
            actor=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
        )
        logger.info(f"Subscription cancellation requested for user {user_id}: {subscription_id}")

        return {
            "success": True,
            "message": "Subscription will cancel at the end of the current period",
            "period_end": period_end.isoformat() if isinstance(period_end, datetime) else period_end,
        }


stripe_service = StripeService()
