"""Profile Service - creation and user-driven onboarding mutations.

The webhook handlers own KYC, subscription and completion fields; this module
only writes what the user decides: tier selection, disclosure acceptance and
the referral code entered at signup.
"""
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import UserProfile, AuditAction
from services.plan_registry import plan_registry
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

REFERRAL_CODE_LENGTH = 8
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 5


class ProfileError(ValueError):
    """User-facing profile mutation failure."""

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def normalize_referral_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    normalized = code.strip().upper()
    return normalized or None


def generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


async def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.profiles.find_one({"user_id": user_id}, {"_id": 0})


async def find_referrer(code: Optional[str], exclude_user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Resolve a referral code to its owner. A user's own code never resolves."""
    normalized = normalize_referral_code(code)
    if not normalized:
        return None
    db = database.get_db()
    referrer = await db.profiles.find_one({"referral_code": normalized}, {"_id": 0})
    if not referrer or referrer.get("user_id") == exclude_user_id:
        return None
    return referrer


async def ensure_profile(
    user_id: str,
    email: Optional[str] = None,
    referral_code: Optional[str] = None,
) -> Dict[str, Any]:
    """Create the profile for a new user, or return the existing one unchanged."""
    existing = await get_profile(user_id)
    if existing:
        return existing

    pending_code = None
    if referral_code:
        referrer = await find_referrer(referral_code, exclude_user_id=user_id)
        if not referrer:
            raise ProfileError(400, "INVALID_REFERRAL_CODE", "Referral code not recognised")
        pending_code = referrer["referral_code"]

    db = database.get_db()
    for attempt in range(MAX_CODE_ATTEMPTS):
        profile = UserProfile(
            user_id=user_id,
            email=email,
            kyc_reference_id=user_id,
            referral_code=generate_referral_code(),
            pending_referral_code=pending_code,
        )
        doc = profile.model_dump()
        doc["kyc_status"] = profile.kyc_status.value
        try:
            await db.profiles.insert_one(doc)
        except DuplicateKeyError:
            # Either the user was created concurrently or the code collided
            concurrent = await get_profile(user_id)
            if concurrent:
                return concurrent
            logger.warning(f"Referral code collision for user {user_id} (attempt {attempt + 1})")
            continue

        logger.info(f"Profile created for user {user_id} referred={bool(pending_code)}")
        await create_audit_log(
            action=AuditAction.PROFILE_CREATED,
            user_id=user_id,
            actor=user_id,
            resource_type="profile",
            resource_id=user_id,
            metadata={"pending_referral_code": pending_code},
        )
        doc.pop("_id", None)
        return doc

    raise RuntimeError(f"Could not allocate a unique referral code for user {user_id}")


async def select_tier(user_id: str, tier: str) -> Dict[str, Any]:
    resolved = plan_registry.resolve_tier(tier)
    if resolved is None:
        raise ProfileError(400, "INVALID_TIER", f"Unknown subscription tier: {tier}")

    db = database.get_db()
    # Tier is fixed once onboarding completes
    profile = await db.profiles.find_one_and_update(
        {"user_id": user_id, "onboarding_completed_at": None},
        {"$set": {
            "selected_subscription_tier": resolved.value,
            "updated_at": datetime.now(timezone.utc),
        }},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not profile:
        if await get_profile(user_id):
            raise ProfileError(409, "TIER_LOCKED", "Subscription tier cannot change after onboarding is complete")
        raise ProfileError(404, "PROFILE_NOT_FOUND", "Profile not found")

    await create_audit_log(
        action=AuditAction.PLAN_SELECTED,
        user_id=user_id,
        actor=user_id,
        metadata={"tier": resolved.value},
    )
    return profile


async def accept_disclosures(user_id: str) -> Dict[str, Any]:
    """Stamp disclosures_accepted_at. A second call keeps the original timestamp."""
    db = database.get_db()
    now = datetime.now(timezone.utc)
    result = await db.profiles.update_one(
        {"user_id": user_id, "disclosures_accepted_at": None},
        {"$set": {"disclosures_accepted_at": now, "updated_at": now}}
    )

    profile = await get_profile(user_id)
    if not profile:
        raise ProfileError(404, "PROFILE_NOT_FOUND", "Profile not found")

    if result.modified_count:
        await create_audit_log(
            action=AuditAction.DISCLOSURES_ACCEPTED,
            user_id=user_id,
            actor=user_id,
            metadata={"accepted_at": now.isoformat()},
        )
    return profile


def serialize_profile(profile: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe profile for API responses."""
    return UserProfile(**profile).model_dump(mode="json")
