"""KYC routes - verification widget outcomes and status.

POST /api/kyc/outcome - Report what the verification widget returned
GET  /api/kyc/status  - Current KYC fields
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional

from middleware import require_auth
from models import VerificationOutcome
from services.kyc_service import kyc_service
from services.onboarding_state import resolve_onboarding_route
from services.profile_service import get_profile

router = APIRouter(prefix="/api/kyc", tags=["kyc"])


class VerificationOutcomeRequest(BaseModel):
    outcome: VerificationOutcome
    inquiry_id: Optional[str] = None
    error: Optional[str] = None


def _kyc_fields(profile: dict) -> dict:
    completed_at = profile.get("kyc_completed_at")
    return {
        "kyc_status": profile.get("kyc_status"),
        "kyc_inquiry_id": profile.get("kyc_inquiry_id"),
        "kyc_completed_at": completed_at.isoformat() if hasattr(completed_at, "isoformat") else completed_at,
        "kyc_declined_reason": profile.get("kyc_declined_reason"),
    }


@router.post("/outcome")
async def report_verification_outcome(request: Request, body: VerificationOutcomeRequest):
    """
    Record the widget outcome. `completed` moves the user to pending review;
    `cancelled` and `error` leave the status alone. The final decision always
    arrives through the Persona webhook.
    """
    user = await require_auth(request)
    profile = await kyc_service.apply_verification_outcome(
        user["user_id"],
        body.outcome,
        inquiry_id=body.inquiry_id,
    )
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")

    return {
        "outcome": body.outcome.value,
        "route": resolve_onboarding_route(profile).value,
        **_kyc_fields(profile),
    }


@router.get("/status")
async def get_kyc_status(request: Request):
    user = await require_auth(request)
    profile = await get_profile(user["user_id"])
    if not profile:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return _kyc_fields(profile)
