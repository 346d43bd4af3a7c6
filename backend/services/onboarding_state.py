"""Onboarding route resolution.

Pure function of the persisted profile: no I/O, so callers (route guard,
status endpoint, post-payment waiter) all agree on where a user belongs.

no session                              -> login
session, no tier selected               -> plan-selection
tier selected, no disclosures           -> disclosures
disclosures accepted, kyc not approved  -> kyc-verify | kyc-pending | kyc-declined
kyc approved, onboarding incomplete     -> checkout
onboarding complete                     -> main-app
"""
from typing import Optional, Dict, Any, Union

from models import KycStatus, OnboardingRoute

KYC_ROUTES = {
    KycStatus.NOT_STARTED.value: OnboardingRoute.KYC_VERIFY,
    KycStatus.PENDING.value: OnboardingRoute.KYC_PENDING,
    KycStatus.DECLINED.value: OnboardingRoute.KYC_DECLINED,
    KycStatus.NEEDS_REVIEW.value: OnboardingRoute.KYC_DECLINED,
}


def _as_route(value: Union[OnboardingRoute, str, None]) -> Optional[OnboardingRoute]:
    if value is None or isinstance(value, OnboardingRoute):
        return value
    try:
        return OnboardingRoute(value.strip("/"))
    except ValueError:
        return None


def route_for_profile(profile: Optional[Dict[str, Any]]) -> OnboardingRoute:
    """Route implied by the profile alone, assuming a live session."""
    if not profile:
        return OnboardingRoute.PLAN_SELECTION
    if profile.get("onboarding_completed_at"):
        return OnboardingRoute.MAIN_APP
    if not profile.get("selected_subscription_tier"):
        return OnboardingRoute.PLAN_SELECTION
    if not profile.get("disclosures_accepted_at"):
        return OnboardingRoute.DISCLOSURES

    kyc_status = profile.get("kyc_status") or KycStatus.NOT_STARTED.value
    if kyc_status != KycStatus.APPROVED.value:
        return KYC_ROUTES.get(kyc_status, OnboardingRoute.KYC_VERIFY)
    return OnboardingRoute.CHECKOUT


def resolve_onboarding_route(
    profile: Optional[Dict[str, Any]],
    has_session: bool = True,
    current_route: Union[OnboardingRoute, str, None] = None,
    last_known_kyc_status: Optional[str] = None,
) -> OnboardingRoute:
    """Where the client must be.

    A client already on checkout whose last known KYC status was approved
    stays on checkout unless the profile shows onboarding finished; a failed
    or stale profile read must not bounce it back to an earlier step.
    """
    if not has_session:
        return OnboardingRoute.LOGIN

    resolved = route_for_profile(profile)

    if (
        _as_route(current_route) == OnboardingRoute.CHECKOUT
        and last_known_kyc_status == KycStatus.APPROVED.value
        and resolved != OnboardingRoute.MAIN_APP
    ):
        return OnboardingRoute.CHECKOUT

    return resolved
