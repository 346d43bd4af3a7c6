"""User Profile Routes
Creates the onboarding profile after signup and returns it.
"""
from fastapi import APIRouter, HTTPException, Request, status
from middleware import require_auth
from services.profile_service import ProfileError, ensure_profile, get_profile, serialize_profile
from pydantic import BaseModel
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/profile", tags=["profile"])


class CreateProfileRequest(BaseModel):
    referral_code: Optional[str] = None


@router.post("")
async def create_profile(request: Request, body: Optional[CreateProfileRequest] = None):
    """Create the caller's profile. Repeated calls return the existing profile."""
    user = await require_auth(request)
    body = body or CreateProfileRequest()

    try:
        profile = await ensure_profile(
            user["user_id"],
            email=user.get("email"),
            referral_code=body.referral_code,
        )
    except ProfileError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail={"error": e.message, "message": e.message, "code": e.code},
        )
    return serialize_profile(profile)


@router.get("/me")
async def get_my_profile(request: Request):
    """Get current user profile."""
    user = await require_auth(request)
    profile = await get_profile(user["user_id"])
    if not profile:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return serialize_profile(profile)
