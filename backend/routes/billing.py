"""Billing Routes - Subscription management.

Endpoints:
- POST /api/billing/cancel - Cancel subscription at period end
"""
from fastapi import APIRouter, HTTPException, Request, status
from services.stripe_service import stripe_service
from middleware import require_auth
import stripe
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/cancel")
async def cancel_subscription(request: Request):
    """
    Cancel the caller's subscription at the end of the current period.

    The subscription stays active until then; Stripe sends
    customer.subscription.updated/deleted as it progresses.
    """
    user = await require_auth(request)
    user_id = user["user_id"]

    try:
        return await stripe_service.cancel_at_period_end(user_id)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except stripe.error.StripeError as e:
        logger.error(f"Stripe cancel error for user {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel subscription"
        )
