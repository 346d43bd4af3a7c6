"""Webhook Routes - Stripe and Persona webhooks.

POST /stripe-webhook          - Stripe payment / subscription events
POST /api/webhooks/stripe     - Alias for Stripe webhook
POST /persona-webhook         - Persona identity-verification events
POST /api/webhooks/persona    - Alias for Persona webhook

Both verify the raw body signature before any processing and answer 200 for
every business outcome so the vendor stops retrying; only a bad signature
(401) or an unparseable body (400) is rejected.
"""
from fastapi import APIRouter, Request, Header
from fastapi.responses import JSONResponse
from services.stripe_webhook_service import stripe_webhook_service
from services.persona_webhook_service import persona_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    """
    Core Stripe webhook handler.

    Handled Events:
    - checkout.session.completed (onboarding completion + share grants)
    - customer.subscription.updated
    - customer.subscription.deleted
    """
    try:
        payload = await request.body()
        status_code, body = await stripe_webhook_service.process_webhook(
            payload=payload,
            signature=stripe_signature
        )
    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        # Return 200 to prevent Stripe retries - we've logged the error
        status_code, body = 200, {"received": True, "processed": False, "error": "Processing failed"}

    return JSONResponse(status_code=status_code, content=body)


async def _handle_persona_webhook(request: Request, persona_signature: str = None):
    try:
        payload = await request.body()
        status_code, body = await persona_webhook_service.process_webhook(
            payload=payload,
            signature=persona_signature
        )
    except Exception as e:
        logger.exception(f"Persona webhook error: {e}")
        status_code, body = 200, {"success": False, "error": "Processing failed"}

    return JSONResponse(status_code=status_code, content=body)


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /stripe-webhook"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/persona-webhook")
async def persona_webhook(
    request: Request,
    persona_signature: str = Header(None, alias="Persona-Signature")
):
    """Handle Persona webhooks at /persona-webhook"""
    return await _handle_persona_webhook(request, persona_signature)


@router.post("/api/webhooks/persona")
async def persona_webhook_alias(
    request: Request,
    persona_signature: str = Header(None, alias="Persona-Signature")
):
    """Handle Persona webhooks at /api/webhooks/persona (alias)"""
    return await _handle_persona_webhook(request, persona_signature)
