"""
Unit tests: profile creation, the user-driven onboarding steps, KYC widget outcomes
and the main-app route guard, exercised through the HTTP layer.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from conftest import auth_headers, make_profile

USER_ID = "user-routes-00001"
NOW = datetime(2025, 2, 1, tzinfo=timezone.utc)


def _insert(fake_db, user_id=USER_ID, **fields):
    asyncio.run(fake_db.profiles.insert_one(make_profile(user_id, **fields)))


def _headers(user_id=USER_ID):
    return auth_headers(user_id, email=f"{user_id}@example.com")


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestProfileCreation:

    def test_requires_auth(self, client, fake_db):
        assert client.post("/api/profile").status_code == 401

    def test_creates_profile_with_defaults(self, client, fake_db):
        response = client.post("/api/profile", headers=_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == USER_ID
        assert body["email"] == f"{USER_ID}@example.com"
        assert body["kyc_status"] == "not_started"
        assert body["shares_balance"] == 0
        assert body["onboarding_completed_at"] is None
        assert len(body["referral_code"]) == 8
        assert fake_db.profiles.docs[0]["kyc_reference_id"] == USER_ID

    def test_repeat_call_returns_same_profile(self, client, fake_db):
        first = client.post("/api/profile", headers=_headers()).json()
        second = client.post("/api/profile", headers=_headers()).json()

        assert first["referral_code"] == second["referral_code"]
        assert len(fake_db.profiles.docs) == 1

    def test_valid_referral_code_is_kept_pending(self, client, fake_db):
        _insert(fake_db, "user-referrer-001", referral_code="FRIEND01")

        response = client.post("/api/profile", json={"referral_code": " friend01 "}, headers=_headers())

        assert response.status_code == 200
        assert response.json()["pending_referral_code"] == "FRIEND01"

    def test_unknown_referral_code_rejected(self, client, fake_db):
        response = client.post("/api/profile", json={"referral_code": "NOPE0000"}, headers=_headers())

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_REFERRAL_CODE"
        assert fake_db.profiles.docs == []

    def test_get_me(self, client, fake_db):
        assert client.get("/api/profile/me", headers=_headers()).status_code == 404
        _insert(fake_db)
        assert client.get("/api/profile/me", headers=_headers()).json()["user_id"] == USER_ID


class TestOnboardingSteps:

    def test_plan_selection_moves_to_disclosures(self, client, fake_db):
        _insert(fake_db)

        response = client.post("/api/onboarding/plan", json={"tier": "Pro"}, headers=_headers())

        assert response.json() == {"route": "disclosures"}
        assert fake_db.profiles.docs[0]["selected_subscription_tier"] == "pro"

    def test_plan_selection_rejects_unknown_tier(self, client, fake_db):
        _insert(fake_db)

        response = client.post("/api/onboarding/plan", json={"tier": "platinum"}, headers=_headers())

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_TIER"
        assert fake_db.profiles.docs[0]["selected_subscription_tier"] is None

    def test_plan_locked_after_onboarding(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="starter", onboarding_completed_at=NOW)

        response = client.post("/api/onboarding/plan", json={"tier": "max"}, headers=_headers())

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "TIER_LOCKED"
        assert fake_db.profiles.docs[0]["selected_subscription_tier"] == "starter"

    def test_plan_selection_without_profile(self, client, fake_db):
        response = client.post("/api/onboarding/plan", json={"tier": "plus"}, headers=_headers())
        assert response.status_code == 404

    def test_disclosures_stamp_once(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="plus")

        response = client.post("/api/onboarding/disclosures", headers=_headers())
        first_stamp = fake_db.profiles.docs[0]["disclosures_accepted_at"]
        client.post("/api/onboarding/disclosures", headers=_headers())

        assert response.json() == {"route": "kyc-verify"}
        assert first_stamp is not None
        assert fake_db.profiles.docs[0]["disclosures_accepted_at"] == first_stamp

    def test_status_reports_route_and_fields(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="pro", disclosures_accepted_at=NOW,
                kyc_status="approved", shares_balance=0)

        body = client.get("/api/onboarding/status", headers=_headers()).json()

        assert body["route"] == "checkout"
        assert body["selected_subscription_tier"] == "pro"
        assert body["disclosures_accepted"] is True
        assert body["kyc_status"] == "approved"
        assert body["onboarding_completed"] is False

    def test_status_without_profile(self, client, fake_db):
        assert client.get("/api/onboarding/status", headers=_headers()).json()["route"] == "plan-selection"

    def test_status_keeps_checkout_sticky(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="pro", disclosures_accepted_at=NOW, kyc_status="pending")

        response = client.get(
            "/api/onboarding/status",
            params={"current_route": "checkout", "last_known_kyc_status": "approved"},
            headers=_headers(),
        )
        assert response.json()["route"] == "checkout"

    def test_await_completion_times_out_to_main_app(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="pro", disclosures_accepted_at=NOW, kyc_status="approved")

        body = client.get("/api/onboarding/await-completion", params={"timeout": 0.1}, headers=_headers()).json()

        assert body["route"] == "main-app"
        assert body["timed_out"] is True

    def test_await_completion_returns_completed_profile(self, client, fake_db):
        _insert(fake_db, onboarding_completed_at=NOW, shares_balance=120)

        body = client.get("/api/onboarding/await-completion", params={"timeout": 1}, headers=_headers()).json()

        assert body["timed_out"] is False
        assert body["onboarding_completed"] is True
        assert body["shares_balance"] == 120

    def test_await_completion_rejects_long_timeout(self, client, fake_db):
        _insert(fake_db)
        response = client.get("/api/onboarding/await-completion", params={"timeout": 120}, headers=_headers())
        assert response.status_code == 422


class TestVerificationOutcome:

    def test_completed_moves_to_pending(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="plus", disclosures_accepted_at=NOW)

        response = client.post(
            "/api/kyc/outcome", json={"outcome": "completed", "inquiry_id": "inq_001"}, headers=_headers()
        )

        body = response.json()
        assert body["kyc_status"] == "pending"
        assert body["kyc_inquiry_id"] == "inq_001"
        assert body["route"] == "kyc-pending"

    def test_retry_after_decline(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="plus", disclosures_accepted_at=NOW,
                kyc_status="declined", kyc_declined_reason="Verification failed per Persona decision")

        body = client.post("/api/kyc/outcome", json={"outcome": "completed"}, headers=_headers()).json()

        assert body["kyc_status"] == "pending"
        assert body["kyc_declined_reason"] is None

    @pytest.mark.parametrize("outcome", ["cancelled", "error"])
    def test_cancel_and_error_leave_status(self, client, fake_db, outcome):
        _insert(fake_db, selected_subscription_tier="plus", disclosures_accepted_at=NOW)

        body = client.post("/api/kyc/outcome", json={"outcome": outcome}, headers=_headers()).json()

        assert body["kyc_status"] == "not_started"
        assert body["route"] == "kyc-verify"

    def test_completed_never_downgrades_approved(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="plus", disclosures_accepted_at=NOW, kyc_status="approved")

        body = client.post("/api/kyc/outcome", json={"outcome": "completed"}, headers=_headers()).json()

        assert body["kyc_status"] == "approved"

    def test_unknown_outcome_rejected(self, client, fake_db):
        _insert(fake_db)
        response = client.post("/api/kyc/outcome", json={"outcome": "maybe"}, headers=_headers())
        assert response.status_code == 422

    def test_kyc_status(self, client, fake_db):
        assert client.get("/api/kyc/status", headers=_headers()).status_code == 404
        _insert(fake_db, kyc_status="needs_review")
        assert client.get("/api/kyc/status", headers=_headers()).json()["kyc_status"] == "needs_review"


class TestMainAppGuard:

    def test_incomplete_onboarding_redirected(self, client, fake_db):
        _insert(fake_db, selected_subscription_tier="plus", disclosures_accepted_at=NOW, kyc_status="pending")

        response = client.get("/api/equity/transactions", headers=_headers())

        assert response.status_code == 403
        assert response.headers["X-Redirect"] == "/kyc-pending"
        actions = [log["action"] for log in fake_db.audit_logs.docs]
        assert "ROUTE_GUARD_REDIRECT" in actions

    def test_missing_profile_redirected_to_plan_selection(self, client, fake_db):
        response = client.get("/api/equity/transactions", headers=_headers())
        assert response.headers["X-Redirect"] == "/plan-selection"

    def test_completed_user_sees_ledger(self, client, fake_db):
        _insert(fake_db, onboarding_completed_at=NOW, shares_balance=150)
        older = {"transaction_id": "t1", "user_id": USER_ID, "shares_amount": 100, "transaction_type": "signup",
                 "description": "Signup bonus", "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc)}
        newer = {"transaction_id": "t2", "user_id": USER_ID, "shares_amount": 50, "transaction_type": "referral_given",
                 "description": "Referral bonus", "created_at": datetime(2025, 1, 2, tzinfo=timezone.utc)}
        fake_db.equity_transactions.docs.extend([older, newer])

        response = client.get("/api/equity/transactions", headers=_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["shares_balance"] == 150
        assert [t["transaction_id"] for t in body["transactions"]] == ["t2", "t1"]
        assert body["transactions"][0]["created_at"].startswith("2025-01-02")
