"""Checkout Routes - embedded subscription checkout.

POST /create-checkout-session      - Create embedded checkout session
POST /api/create-checkout-session  - Alias
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from typing import Optional
from middleware import require_auth
from services.checkout_service import create_checkout_session_for_user, CheckoutError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["checkout"])


class CheckoutSessionRequest(BaseModel):
    """Request to create an embedded checkout session."""
    model_config = ConfigDict(extra="ignore")

    priceId: Optional[str] = None


async def _create_checkout_session(request: Request, body: Optional[CheckoutSessionRequest]):
    user = await require_auth(request)
    user_id = user["user_id"]
    body = body or CheckoutSessionRequest()

    try:
        return await create_checkout_session_for_user(
            user_id=user_id,
            price_id=body.priceId,
            origin_url=request.headers.get("origin"),
        )
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    except Exception:
        logger.exception(f"Checkout session creation failed for user {user_id}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to create checkout session", "message": "Failed to create checkout session",
                    "code": "CHECKOUT_FAILED"}
        )


@router.post("/create-checkout-session")
async def create_checkout_session(request: Request, body: Optional[CheckoutSessionRequest] = None):
    """
    Create an embedded Stripe checkout session for the user's selected tier.

    Requires an approved KYC status and a selected tier.
    Returns clientSecret, customerId and sessionId.
    """
    return await _create_checkout_session(request, body)


@router.post("/api/create-checkout-session")
async def create_checkout_session_alias(request: Request, body: Optional[CheckoutSessionRequest] = None):
    return await _create_checkout_session(request, body)
