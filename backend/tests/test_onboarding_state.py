"""
Unit tests: onboarding route resolution is a pure function of the profile, applied in order,
with checkout kept sticky for a client that last saw KYC approved.
"""
from datetime import datetime, timezone

import pytest

from models import OnboardingRoute
from services.onboarding_state import resolve_onboarding_route

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _profile(**fields):
    base = {
        "user_id": "user-state-0001",
        "selected_subscription_tier": None,
        "disclosures_accepted_at": None,
        "kyc_status": "not_started",
        "onboarding_completed_at": None,
    }
    base.update(fields)
    return base


def test_no_session_goes_to_login():
    assert resolve_onboarding_route(_profile(onboarding_completed_at=NOW), has_session=False) == OnboardingRoute.LOGIN


def test_missing_profile_goes_to_plan_selection():
    assert resolve_onboarding_route(None) == OnboardingRoute.PLAN_SELECTION


@pytest.mark.parametrize("fields,expected", [
    ({}, OnboardingRoute.PLAN_SELECTION),
    ({"selected_subscription_tier": "plus"}, OnboardingRoute.DISCLOSURES),
    ({"selected_subscription_tier": "plus", "disclosures_accepted_at": NOW}, OnboardingRoute.KYC_VERIFY),
    ({"selected_subscription_tier": "plus", "disclosures_accepted_at": NOW, "kyc_status": "pending"},
     OnboardingRoute.KYC_PENDING),
    ({"selected_subscription_tier": "plus", "disclosures_accepted_at": NOW, "kyc_status": "declined"},
     OnboardingRoute.KYC_DECLINED),
    ({"selected_subscription_tier": "plus", "disclosures_accepted_at": NOW, "kyc_status": "needs_review"},
     OnboardingRoute.KYC_DECLINED),
    ({"selected_subscription_tier": "plus", "disclosures_accepted_at": NOW, "kyc_status": "approved"},
     OnboardingRoute.CHECKOUT),
    ({"selected_subscription_tier": "plus", "disclosures_accepted_at": NOW, "kyc_status": "approved",
      "onboarding_completed_at": NOW}, OnboardingRoute.MAIN_APP),
])
def test_guard_ordering(fields, expected):
    assert resolve_onboarding_route(_profile(**fields)) == expected


def test_earlier_step_wins_over_later_fields():
    # KYC approved but disclosures never accepted still lands on disclosures
    profile = _profile(selected_subscription_tier="pro", kyc_status="approved")
    assert resolve_onboarding_route(profile) == OnboardingRoute.DISCLOSURES


def test_completed_onboarding_wins_over_everything():
    assert resolve_onboarding_route(_profile(onboarding_completed_at=NOW)) == OnboardingRoute.MAIN_APP


class TestCheckoutStickiness:

    def test_failed_profile_fetch_keeps_checkout(self):
        route = resolve_onboarding_route(None, current_route="checkout", last_known_kyc_status="approved")
        assert route == OnboardingRoute.CHECKOUT

    def test_stale_profile_keeps_checkout(self):
        stale = _profile(selected_subscription_tier="pro", disclosures_accepted_at=NOW, kyc_status="pending")
        route = resolve_onboarding_route(stale, current_route="/checkout", last_known_kyc_status="approved")
        assert route == OnboardingRoute.CHECKOUT

    def test_completion_moves_forward_from_checkout(self):
        route = resolve_onboarding_route(
            _profile(onboarding_completed_at=NOW), current_route="checkout", last_known_kyc_status="approved"
        )
        assert route == OnboardingRoute.MAIN_APP

    def test_not_sticky_without_approved_kyc(self):
        stale = _profile(selected_subscription_tier="pro", disclosures_accepted_at=NOW, kyc_status="pending")
        route = resolve_onboarding_route(stale, current_route="checkout", last_known_kyc_status="pending")
        assert route == OnboardingRoute.KYC_PENDING

    def test_not_sticky_on_other_routes(self):
        route = resolve_onboarding_route(None, current_route="kyc-pending", last_known_kyc_status="approved")
        assert route == OnboardingRoute.PLAN_SELECTION
