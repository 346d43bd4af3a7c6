"""Stripe Webhook Service - payment completion and subscription lifecycle.

Key Principles:
1. Signature verification: every delivery is checked against the raw body
2. Exactly-once completion: one atomic conditional update on
   onboarding_completed_at is the commit point for share grants
3. Independent grants: a failed grant is logged and the next one still runs
4. Audit logging: every transition is logged
5. Always acknowledge: business errors return 200 so Stripe stops retrying

Events Handled:
- checkout.session.completed (onboarding completion + share grants)
- customer.subscription.updated
- customer.subscription.deleted
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple, List

from pymongo import ReturnDocument

from database import database
from models import (
    AuditAction,
    SubscriptionStatus,
    SubscriptionTier,
    StripeWebhookResponse,
    WebhookVendor,
)
from services.equity_ledger import equity_ledger
from services.plan_registry import plan_registry
from services.profile_service import find_referrer
from services.signature_verifier import verify_stripe_signature
from services.stripe_service import stripe_service, extract_period_end
from services.webhook_event_log import webhook_event_log
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields can hold either an id or an expanded object."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Extract safe fields for structured logging (event_id, event_type, livemode, user_id, subscription_id, checkout_session_id)."""
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata", {}) or {}
    event_type = event.get("type")
    return {
        "event_id": event.get("id"),
        "event_type": event_type,
        "livemode": event.get("livemode"),
        "user_id": metadata.get("user_id"),
        "subscription_id": obj.get("id") if (event_type or "").startswith("customer.subscription.") else _id_of(obj.get("subscription")),
        "checkout_session_id": obj.get("id") if event_type == "checkout.session.completed" else None,
    }


class StripeWebhookService:
    """Stripe webhook handler with idempotency."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Main webhook entry point.

        Returns:
            (http_status, body)
        """
        # Step 1: Verify signature against the raw body
        if not verify_stripe_signature(payload, signature, _get_webhook_secret()):
            logger.error("Webhook signature verification failed (check STRIPE_WEBHOOK_SECRET)")
            return 401, StripeWebhookResponse(received=False, error="Invalid signature").model_dump(exclude_none=True)

        try:
            event = json.loads(payload)
            if not isinstance(event, dict):
                raise ValueError("Event body is not an object")
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return 400, StripeWebhookResponse(received=False, error="Invalid payload").model_dump(exclude_none=True)

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s user_id=%s subscription_id=%s checkout_session_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("user_id"), ctx.get("subscription_id"), ctx.get("checkout_session_id"),
        )

        # Step 2: Idempotency check
        if not await webhook_event_log.begin(WebhookVendor.STRIPE, event_id, event_type):
            return 200, StripeWebhookResponse(
                received=True, event=event_type, processed=True, note="Already processed"
            ).model_dump(exclude_none=True)

        # Step 3: Process event
        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.exception(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s",
                event_id, event_type,
            )
            await webhook_event_log.mark_failed(WebhookVendor.STRIPE, event_id, str(e))

            await create_audit_log(
                action=AuditAction.WEBHOOK_FAILED,
                actor="WEBHOOK:stripe",
                user_id=ctx.get("user_id"),
                metadata={
                    "event_id": event_id,
                    "event_type": event_type,
                    "error": str(e),
                }
            )

            # Return 200 to prevent Stripe retries (we've logged the failure)
            return 200, StripeWebhookResponse(
                received=True, event=event_type, processed=False, error="Processing failed"
            ).model_dump(exclude_none=True)

        await webhook_event_log.mark_processed(WebhookVendor.STRIPE, event_id, result.get("user_id"))
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s processed=%s",
            event_id, event_type, result.get("user_id"), result.get("processed"),
        )
        return 200, StripeWebhookResponse(
            received=True,
            event=event_type,
            processed=result.get("processed"),
            user_id=result.get("user_id"),
            note=result.get("note"),
            error=result.get("error"),
        ).model_dump(exclude_none=True)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
        }

        handler = handlers.get(event_type)
        if handler:
            logger.info("HANDLER_START event_id=%s event_type=%s", event.get("id"), event_type)
            result = await handler(data, event)
            logger.info("HANDLER_END event_id=%s event_type=%s processed=%s", event.get("id"), event_type, result.get("processed"))
            return result

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"processed": False, "note": "Event type not handled"}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """
        Handle checkout.session.completed - onboarding completion trigger.

        The conditional update on onboarding_completed_at decides which
        delivery grants shares; every other delivery sees it already set.
        """
        db = database.get_db()
        event_id = event.get("id")

        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        tier = plan_registry.resolve_tier(metadata.get("tier"))
        if not user_id or tier is None:
            logger.error(
                f"Checkout session {session.get('id')} missing user_id or valid tier in metadata: "
                f"user_id={user_id} tier={metadata.get('tier')}"
            )
            return {"processed": False, "user_id": user_id, "error": "Missing user_id or tier in session metadata"}

        profile = await db.profiles.find_one({"user_id": user_id}, {"_id": 0})
        if not profile:
            logger.error(f"Checkout completed for unknown user {user_id} session={session.get('id')}")
            return {"processed": False, "user_id": user_id, "error": "Profile not found"}

        # Fast path for redeliveries
        if profile.get("onboarding_completed_at"):
            logger.info(f"Onboarding already completed for user {user_id} - skipping event {event_id}")
            return {"processed": True, "user_id": user_id, "note": "Already processed"}

        subscription_id = _id_of(session.get("subscription"))
        period_end = stripe_service.get_subscription_period_end(subscription_id)

        now = datetime.now(timezone.utc)
        completion = {
            "billing_subscription_id": subscription_id,
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "subscription_period_end": period_end,
            "onboarding_completed_at": now,
            "updated_at": now,
        }
        customer_id = _id_of(session.get("customer"))
        if customer_id:
            completion["billing_customer_id"] = customer_id

        # Commit point
        before = await db.profiles.find_one_and_update(
            {"user_id": user_id, "onboarding_completed_at": None},
            {"$set": completion},
            projection={"_id": 0},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            logger.info(f"Onboarding completed concurrently for user {user_id} - skipping event {event_id}")
            return {"processed": True, "user_id": user_id, "note": "Already processed"}

        logger.info(
            "ONBOARDING_COMPLETED user_id=%s tier=%s subscription_id=%s event_id=%s",
            user_id, tier.value, subscription_id, event_id,
        )
        await create_audit_log(
            action=AuditAction.ONBOARDING_COMPLETED,
            actor="WEBHOOK:stripe",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            metadata={"tier": tier.value, "event_id": event_id, "checkout_session_id": session.get("id")},
        )

        granted = await self._grant_onboarding_shares(before, tier, subscription_id, event_id)
        return {"processed": True, "user_id": user_id, "shares_granted": granted}

    async def _grant_onboarding_shares(
        self,
        before: Dict[str, Any],
        tier: SubscriptionTier,
        subscription_id: Optional[str],
        event_id: Optional[str],
    ) -> List[str]:
        """Run the signup, tier and referral grants. Each one is attempted even if another failed."""
        user_id = before["user_id"]
        granted: List[str] = []

        async def attempt(name: str, grant):
            try:
                result = await grant()
            except Exception as e:
                # Onboarding is already committed; the missing grant is fixed by hand
                logger.exception(
                    "SHARES_GRANT_FAILED user_id=%s grant=%s event_id=%s",
                    user_id, name, event_id,
                )
                await create_audit_log(
                    action=AuditAction.SHARES_GRANT_FAILED,
                    actor="WEBHOOK:stripe",
                    user_id=user_id,
                    metadata={"grant": name, "event_id": event_id, "error": str(e)},
                )
                return
            if result:
                granted.append(name)

        if (before.get("shares_balance") or 0) == 0:
            await attempt("signup", lambda: equity_ledger.grant_signup_bonus(user_id, event_id=event_id))
        else:
            logger.info(f"Signup bonus skipped for user {user_id}: balance={before.get('shares_balance')}")

        await attempt(
            "subscription",
            lambda: equity_ledger.grant_subscription_shares(
                user_id, tier, subscription_id=subscription_id, event_id=event_id
            ),
        )

        pending_code = before.get("pending_referral_code")
        if pending_code:
            await attempt("referral", lambda: self._grant_referral(user_id, pending_code, event_id))

        return granted

    async def _grant_referral(self, user_id: str, code: str, event_id: Optional[str]):
        referrer = await find_referrer(code, exclude_user_id=user_id)
        if not referrer:
            logger.warning(f"Referral code {code} for user {user_id} did not resolve - skipping referral grant")
            return None

        transactions = await equity_ledger.grant_referral_pair(
            referred_user_id=user_id,
            referrer_user_id=referrer["user_id"],
            referral_code=referrer["referral_code"],
            event_id=event_id,
        )
        db = database.get_db()
        await db.profiles.update_one(
            {"user_id": user_id},
            {"$set": {"pending_referral_code": None, "updated_at": datetime.now(timezone.utc)}}
        )
        return transactions

    async def _handle_subscription_updated(self, subscription: Dict, event: Dict) -> Dict:
        """Handle customer.subscription.updated - status, period end and cancel flag only."""
        user_id = (subscription.get("metadata") or {}).get("user_id")
        if not user_id:
            logger.warning(f"Subscription {subscription.get('id')} has no user_id metadata - ignoring")
            return {"processed": False, "error": "Missing user_id in subscription metadata"}

        update: Dict[str, Any] = {
            "subscription_status": plan_registry.map_subscription_status(subscription.get("status")),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "updated_at": datetime.now(timezone.utc),
        }
        period_end = extract_period_end(subscription)
        if period_end:
            update["subscription_period_end"] = period_end

        return await self._apply_subscription_update(subscription.get("id"), user_id, update, event)

    async def _handle_subscription_deleted(self, subscription: Dict, event: Dict) -> Dict:
        """Handle customer.subscription.deleted - mark cancelled."""
        user_id = (subscription.get("metadata") or {}).get("user_id")
        if not user_id:
            logger.warning(f"Deleted subscription {subscription.get('id')} has no user_id metadata - ignoring")
            return {"processed": False, "error": "Missing user_id in subscription metadata"}

        update = {
            "subscription_status": SubscriptionStatus.CANCELLED.value,
            "updated_at": datetime.now(timezone.utc),
        }
        return await self._apply_subscription_update(subscription.get("id"), user_id, update, event)

    async def _apply_subscription_update(
        self,
        subscription_id: Optional[str],
        user_id: str,
        update: Dict[str, Any],
        event: Dict,
    ) -> Dict:
        if not subscription_id:
            return {"processed": False, "user_id": user_id, "error": "Missing subscription id"}

        db = database.get_db()
        before = await db.profiles.find_one_and_update(
            {"billing_subscription_id": subscription_id},
            {"$set": update},
            projection={"_id": 0},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            logger.warning(f"No profile for subscription {subscription_id} (user {user_id}) - ignoring {event.get('type')}")
            return {"processed": False, "user_id": user_id, "error": "Profile not found for subscription"}

        logger.info(
            "SUBSCRIPTION_STATUS_UPDATED user_id=%s subscription_id=%s from=%s to=%s",
            before["user_id"], subscription_id, before.get("subscription_status"), update["subscription_status"],
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_STATUS_UPDATED,
            actor="WEBHOOK:stripe",
            user_id=before["user_id"],
            resource_type="subscription",
            resource_id=subscription_id,
            before_state={"subscription_status": before.get("subscription_status")},
            after_state={"subscription_status": update["subscription_status"]},
            metadata={"event_id": event.get("id"), "event_type": event.get("type")},
        )
        return {"processed": True, "user_id": before["user_id"]}


# Singleton instance
stripe_webhook_service = StripeWebhookService()
