from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SubscriptionTier(str, Enum):
    STARTER = "starter"
    PLUS = "plus"
    PRO = "pro"
    MAX = "max"

class KycStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    NEEDS_REVIEW = "needs_review"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    PENDING = "pending"

class EquityTransactionType(str, Enum):
    SIGNUP = "signup"
    SUBSCRIPTION = "subscription"
    REFERRAL_RECEIVED = "referral_received"
    REFERRAL_GIVEN = "referral_given"

class WebhookVendor(str, Enum):
    STRIPE = "stripe"
    PERSONA = "persona"

class WebhookEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

class OnboardingRoute(str, Enum):
    """Where the client must be, given the persisted profile."""
    LOGIN = "login"
    PLAN_SELECTION = "plan-selection"
    DISCLOSURES = "disclosures"
    KYC_VERIFY = "kyc-verify"
    KYC_PENDING = "kyc-pending"
    KYC_DECLINED = "kyc-declined"
    CHECKOUT = "checkout"
    MAIN_APP = "main-app"

class VerificationOutcome(str, Enum):
    """Typed result reported by the embedded identity-verification widget."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

class AuditAction(str, Enum):
    # Profile / onboarding
    PROFILE_CREATED = "PROFILE_CREATED"
    PLAN_SELECTED = "PLAN_SELECTED"
    DISCLOSURES_ACCEPTED = "DISCLOSURES_ACCEPTED"
    ONBOARDING_COMPLETED = "ONBOARDING_COMPLETED"

    # KYC
    KYC_SUBMITTED = "KYC_SUBMITTED"
    KYC_STATUS_UPDATED = "KYC_STATUS_UPDATED"

    # Billing
    CHECKOUT_SESSION_CREATED = "CHECKOUT_SESSION_CREATED"
    SUBSCRIPTION_STATUS_UPDATED = "SUBSCRIPTION_STATUS_UPDATED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"

    # Equity
    SHARES_GRANTED = "SHARES_GRANTED"
    SHARES_GRANT_FAILED = "SHARES_GRANT_FAILED"
    BALANCE_RECONCILED = "BALANCE_RECONCILED"

    # Webhooks
    WEBHOOK_FAILED = "WEBHOOK_FAILED"

    # Route Guards
    ROUTE_GUARD_REDIRECT = "ROUTE_GUARD_REDIRECT"


# ============================================================================
# DATA MODELS
# ============================================================================

class UserProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: Optional[str] = None
    selected_subscription_tier: Optional[SubscriptionTier] = None
    disclosures_accepted_at: Optional[datetime] = None

    kyc_status: KycStatus = KycStatus.NOT_STARTED
    kyc_reference_id: Optional[str] = None
    kyc_inquiry_id: Optional[str] = None
    kyc_account_id: Optional[str] = None
    kyc_completed_at: Optional[datetime] = None
    kyc_declined_reason: Optional[str] = None

    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    # Mapped Stripe status; unmapped values are stored as-is
    subscription_status: Optional[str] = None
    subscription_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    # Write-once; only the payment webhook sets it
    onboarding_completed_at: Optional[datetime] = None

    shares_balance: int = 0
    signup_bonus_granted_at: Optional[datetime] = None
    pending_referral_code: Optional[str] = None
    referral_code: str

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EquityTransaction(BaseModel):
    """Append-only share ledger entry. Corrections are new entries."""
    model_config = ConfigDict(extra="ignore")

    transaction_id: str = Field(default_factory=lambda: f"EQT-{uuid.uuid4().hex[:12].upper()}")
    user_id: str
    transaction_type: EquityTransactionType
    shares_amount: int = Field(gt=0)
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WebhookEventRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    vendor: WebhookVendor
    event_id: str
    event_type: Optional[str] = None
    status: WebhookEventStatus = WebhookEventStatus.PROCESSING
    related_user_id: Optional[str] = None
    error: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor: str = "SYSTEM"
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# WEBHOOK RESPONSES
# ============================================================================

class StripeWebhookResponse(BaseModel):
    """Acknowledgement body for the payment processor. Always sent with 200 unless auth failed."""
    received: bool
    event: Optional[str] = None
    processed: Optional[bool] = None
    user_id: Optional[str] = None
    note: Optional[str] = None
    error: Optional[str] = None


class PersonaWebhookResponse(BaseModel):
    success: bool
    event: Optional[str] = None
    inquiry_id: Optional[str] = None
    error: Optional[str] = None
