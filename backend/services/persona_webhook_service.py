"""Persona Webhook Service - identity-verification event intake.

Verifies the Persona-Signature header, records the delivery in the event log,
and hands the inquiry event to the KYC service.
"""
import json
import logging
import os
from typing import Dict, Any, Optional, Tuple

from models import WebhookVendor, AuditAction, PersonaWebhookResponse
from services.kyc_service import kyc_service, parse_inquiry_event
from services.signature_verifier import verify_persona_signature
from services.webhook_event_log import webhook_event_log
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _get_webhook_secret() -> str:
    return (os.getenv("PERSONA_WEBHOOK_SECRET") or "").strip()


class PersonaWebhookService:

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Main webhook entry point.

        Returns:
            (http_status, body)
        """
        if not verify_persona_signature(payload, signature, _get_webhook_secret()):
            logger.warning("Persona webhook signature verification failed")
            return 401, PersonaWebhookResponse(success=False, error="Invalid signature").model_dump(exclude_none=True)

        try:
            body = json.loads(payload)
            event = parse_inquiry_event(body)
        except (ValueError, AttributeError) as e:
            logger.error(f"Persona webhook parse error: {e}")
            return 400, PersonaWebhookResponse(success=False, error="Malformed payload").model_dump(exclude_none=True)

        event_id = ((body.get("data") or {}).get("id"))
        logger.info(
            "WEBHOOK_RECEIVED vendor=persona event_id=%s event=%s inquiry_id=%s reference_id=%s",
            event_id, event.name, event.inquiry_id, event.reference_id,
        )

        if not await webhook_event_log.begin(WebhookVendor.PERSONA, event_id, event.name):
            return 200, PersonaWebhookResponse(
                success=True, event=event.name, inquiry_id=event.inquiry_id
            ).model_dump(exclude_none=True)

        try:
            result = await kyc_service.apply_inquiry_event(event)
        except Exception as e:
            logger.exception(
                "WEBHOOK_PROCESSING_FAILED vendor=persona event_id=%s event=%s",
                event_id, event.name,
            )
            await webhook_event_log.mark_failed(WebhookVendor.PERSONA, event_id, str(e))
            await create_audit_log(
                action=AuditAction.WEBHOOK_FAILED,
                actor="WEBHOOK:persona",
                metadata={"event_id": event_id, "event": event.name, "error": str(e)},
            )
            return 200, PersonaWebhookResponse(
                success=False, event=event.name, inquiry_id=event.inquiry_id, error="Processing failed"
            ).model_dump(exclude_none=True)

        await webhook_event_log.mark_processed(WebhookVendor.PERSONA, event_id, result.get("user_id"))
        logger.info(
            "WEBHOOK_PROCESSED_OK vendor=persona event_id=%s event=%s user_id=%s success=%s",
            event_id, event.name, result.get("user_id"), result.get("success"),
        )

        return 200, PersonaWebhookResponse(
            success=result["success"],
            event=event.name,
            inquiry_id=event.inquiry_id,
            error=result.get("error"),
        ).model_dump(exclude_none=True)


persona_webhook_service = PersonaWebhookService()
