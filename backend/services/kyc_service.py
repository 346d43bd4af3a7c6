"""KYC Service - identity-verification status transitions.

not_started --(inquiry submitted)--> pending
pending --inquiry.approved--> approved           (terminal)
pending --inquiry.declined--> declined           (user may retry)
pending --inquiry.marked-for-review--> needs_review

Vendor events can arrive out of order. Each status carries a priority and an
event that would lower it, repeat it, or leave `approved` is skipped.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from database import database
from models import KycStatus, VerificationOutcome, AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

DECLINED_REASON = "Verification failed per Persona decision"

EVENT_STATUS_MAP: Dict[str, KycStatus] = {
    "inquiry.completed": KycStatus.PENDING,
    "inquiry.approved": KycStatus.APPROVED,
    "inquiry.declined": KycStatus.DECLINED,
    "inquiry.marked-for-review": KycStatus.NEEDS_REVIEW,
}

STATUS_PRIORITY: Dict[str, int] = {
    KycStatus.NOT_STARTED.value: 0,
    KycStatus.PENDING.value: 1,
    KycStatus.NEEDS_REVIEW.value: 2,
    KycStatus.DECLINED.value: 3,
    KycStatus.APPROVED.value: 3,
}

# Statuses from which the user may start a new verification attempt
RESTARTABLE_STATUSES = {
    KycStatus.NOT_STARTED.value,
    KycStatus.DECLINED.value,
    KycStatus.NEEDS_REVIEW.value,
}


@dataclass
class InquiryEvent:
    name: str
    inquiry_id: Optional[str]
    reference_id: Optional[str]
    account_id: Optional[str] = None
    completed_at: Optional[datetime] = None


def should_apply_transition(current: Optional[str], new: KycStatus) -> bool:
    """True when moving from `current` to `new` is a forward transition."""
    current = current or KycStatus.NOT_STARTED.value
    if current == KycStatus.APPROVED.value:
        return False
    if current == new.value:
        return False
    return STATUS_PRIORITY.get(new.value, 0) >= STATUS_PRIORITY.get(current, 0)


def _parse_vendor_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable completed-at from vendor: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_inquiry_event(body: Dict[str, Any]) -> InquiryEvent:
    """Pull the fields used for transitions out of a vendor webhook body.

    Raises ValueError when the body lacks an event name or an inquiry with an id.
    """
    attributes = ((body or {}).get("data") or {}).get("attributes") or {}
    name = attributes.get("name")
    if not name or not isinstance(name, str):
        raise ValueError("Missing event name")

    inquiry = (attributes.get("payload") or {}).get("data")
    if not isinstance(inquiry, dict) or not inquiry.get("id"):
        raise ValueError("Missing inquiry in event payload")
    inquiry_attrs = inquiry.get("attributes") or {}
    return InquiryEvent(
        name=name,
        inquiry_id=inquiry.get("id"),
        reference_id=inquiry_attrs.get("reference-id"),
        account_id=inquiry_attrs.get("account-id"),
        completed_at=_parse_vendor_time(inquiry_attrs.get("completed-at")),
    )


class KycService:

    async def apply_inquiry_event(self, event: InquiryEvent) -> Dict[str, Any]:
        """Apply a verified vendor event to the matching profile.

        Returns a result dict with `success` and, when skipped or ignored, a `note`.
        """
        new_status = EVENT_STATUS_MAP.get(event.name)
        if new_status is None:
            logger.info(f"Ignoring unhandled KYC event: {event.name}")
            return {"success": True, "note": "Event ignored"}

        if not event.reference_id:
            logger.warning(f"KYC event {event.name} without reference-id inquiry_id={event.inquiry_id}")
            return {"success": False, "error": "Missing reference id"}

        db = database.get_db()
        profile = await db.profiles.find_one({"kyc_reference_id": event.reference_id}, {"_id": 0})
        if not profile:
            logger.warning(
                f"No profile for KYC reference {event.reference_id} event={event.name} inquiry_id={event.inquiry_id}"
            )
            return {"success": False, "error": "Profile not found"}

        user_id = profile["user_id"]
        current = profile.get("kyc_status")
        if not should_apply_transition(current, new_status):
            logger.info(
                f"KYC transition skipped for user {user_id}: current={current} incoming={new_status.value} event={event.name}"
            )
            return {"success": True, "user_id": user_id, "note": "Transition skipped"}

        now = datetime.now(timezone.utc)
        update: Dict[str, Any] = {
            "kyc_status": new_status.value,
            "updated_at": now,
        }
        if event.inquiry_id:
            update["kyc_inquiry_id"] = event.inquiry_id
        if event.account_id:
            update["kyc_account_id"] = event.account_id
        if new_status == KycStatus.APPROVED:
            update["kyc_completed_at"] = event.completed_at or now
            update["kyc_declined_reason"] = None
        elif new_status == KycStatus.DECLINED:
            update["kyc_declined_reason"] = DECLINED_REASON

        # Conditional on the status we read so a concurrent delivery cannot be overwritten
        result = await db.profiles.update_one(
            {"user_id": user_id, "kyc_status": current},
            {"$set": update}
        )
        if result.modified_count == 0:
            logger.info(f"KYC status for user {user_id} changed concurrently - skipping {event.name}")
            return {"success": True, "user_id": user_id, "note": "Transition skipped"}

        logger.info(f"KYC_STATUS_UPDATED user_id={user_id} from={current} to={new_status.value} event={event.name}")
        await create_audit_log(
            action=AuditAction.KYC_STATUS_UPDATED,
            user_id=user_id,
            actor="WEBHOOK:persona",
            resource_type="profile",
            resource_id=user_id,
            before_state={"kyc_status": current},
            after_state={"kyc_status": new_status.value},
            metadata={"event": event.name, "inquiry_id": event.inquiry_id},
        )
        return {"success": True, "user_id": user_id, "kyc_status": new_status.value}

    async def apply_verification_outcome(
        self,
        user_id: str,
        outcome: VerificationOutcome,
        inquiry_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Record what the verification widget reported. Returns the updated profile, None if missing."""
        db = database.get_db()
        profile = await db.profiles.find_one({"user_id": user_id}, {"_id": 0})
        if not profile:
            return None

        if outcome != VerificationOutcome.COMPLETED:
            logger.info(f"Verification widget outcome for user {user_id}: {outcome.value}")
            return profile

        current = profile.get("kyc_status") or KycStatus.NOT_STARTED.value
        if current not in RESTARTABLE_STATUSES:
            return profile

        now = datetime.now(timezone.utc)
        update: Dict[str, Any] = {
            "kyc_status": KycStatus.PENDING.value,
            "kyc_reference_id": user_id,
            "kyc_declined_reason": None,
            "updated_at": now,
        }
        if inquiry_id:
            update["kyc_inquiry_id"] = inquiry_id

        result = await db.profiles.update_one(
            {"user_id": user_id, "kyc_status": current},
            {"$set": update}
        )
        if result.modified_count:
            await create_audit_log(
                action=AuditAction.KYC_SUBMITTED,
                user_id=user_id,
                actor=user_id,
                before_state={"kyc_status": current},
                after_state={"kyc_status": KycStatus.PENDING.value},
                metadata={"inquiry_id": inquiry_id},
            )
        return await db.profiles.find_one({"user_id": user_id}, {"_id": 0})


kyc_service = KycService()
