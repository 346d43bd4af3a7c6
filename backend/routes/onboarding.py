"""Onboarding routes - user-driven steps and route resolution.

POST /api/onboarding/plan              - Select subscription tier
POST /api/onboarding/disclosures       - Accept legal disclosures
GET  /api/onboarding/status            - Resolved route plus the fields it was resolved from
GET  /api/onboarding/await-completion  - Post-payment wait for the payment webhook
"""
from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel
from typing import Optional

from middleware import require_auth
from services.onboarding_state import resolve_onboarding_route
from services.profile_feed import wait_for_onboarding_completion, COMPLETION_TIMEOUT_SECONDS
from services.profile_service import ProfileError, get_profile, select_tier, accept_disclosures

router = APIRouter(prefix="/api/onboarding", tags=["onboarding"])


class PlanSelectionRequest(BaseModel):
    tier: str


def _iso(value):
    return value.isoformat() if hasattr(value, "isoformat") else value


def _status_payload(profile: Optional[dict], route) -> dict:
    profile = profile or {}
    return {
        "route": route.value,
        "selected_subscription_tier": profile.get("selected_subscription_tier"),
        "disclosures_accepted": bool(profile.get("disclosures_accepted_at")),
        "kyc_status": profile.get("kyc_status"),
        "subscription_status": profile.get("subscription_status"),
        "onboarding_completed": bool(profile.get("onboarding_completed_at")),
        "onboarding_completed_at": _iso(profile.get("onboarding_completed_at")),
        "shares_balance": profile.get("shares_balance", 0),
    }


def _raise_profile_error(e: ProfileError):
    raise HTTPException(
        status_code=e.status_code,
        detail={"error": e.message, "message": e.message, "code": e.code},
    )


@router.post("/plan")
async def choose_plan(request: Request, body: PlanSelectionRequest):
    user = await require_auth(request)
    try:
        profile = await select_tier(user["user_id"], body.tier)
    except ProfileError as e:
        _raise_profile_error(e)
    return {"route": resolve_onboarding_route(profile).value}


@router.post("/disclosures")
async def accept_legal_disclosures(request: Request):
    user = await require_auth(request)
    try:
        profile = await accept_disclosures(user["user_id"])
    except ProfileError as e:
        _raise_profile_error(e)
    return {"route": resolve_onboarding_route(profile).value}


@router.get("/status")
async def get_onboarding_status(
    request: Request,
    current_route: Optional[str] = Query(None, description="Route the client is on"),
    last_known_kyc_status: Optional[str] = Query(None),
):
    """
    Get onboarding status for polling. Read from DB only; no Stripe calls.

    A client on checkout passes its current route and last known KYC status
    so a stale read keeps it there.
    """
    user = await require_auth(request)
    profile = await get_profile(user["user_id"])
    route = resolve_onboarding_route(
        profile,
        has_session=True,
        current_route=current_route,
        last_known_kyc_status=last_known_kyc_status,
    )
    return _status_payload(profile, route)


@router.get("/await-completion")
async def await_onboarding_completion(
    request: Request,
    timeout: float = Query(COMPLETION_TIMEOUT_SECONDS, gt=0, le=COMPLETION_TIMEOUT_SECONDS),
):
    """
    Hold the request until the payment webhook has completed onboarding, or
    the ceiling passes. Always answers main-app.
    """
    user = await require_auth(request)
    if not await get_profile(user["user_id"]):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")

    result = await wait_for_onboarding_completion(user["user_id"], timeout=timeout)
    payload = _status_payload(result["profile"], result["route"])
    payload["timed_out"] = result["timed_out"]
    return payload
