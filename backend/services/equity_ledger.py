"""Equity Ledger Service

Handles all share operations:
- Append-only transaction recording
- Balance maintenance (profiles.shares_balance moves with every entry)
- Signup bonus claim (at most once per user)
- Subscription and referral grants
- Balance reconciliation from the ledger
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import logging

from database import database
from models import EquityTransaction, EquityTransactionType, SubscriptionTier, AuditAction
from services.plan_registry import (
    plan_registry,
    SIGNUP_BONUS_SHARES,
    REFERRAL_RECEIVED_SHARES,
    REFERRAL_GIVEN_SHARES,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

GRANTED_VIA_STRIPE_WEBHOOK = "stripe_webhook"


class EquityLedgerService:
    """Share ledger management service."""

    def _get_db(self):
        return database.get_db()

    async def record_transaction(
        self,
        user_id: str,
        amount: int,
        transaction_type: EquityTransactionType,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EquityTransaction:
        """Append a ledger entry and move the profile balance by the same amount."""
        if amount <= 0:
            raise ValueError("Share amount must be positive")

        db = self._get_db()

        transaction = EquityTransaction(
            user_id=user_id,
            transaction_type=transaction_type,
            shares_amount=amount,
            description=description,
            metadata=metadata or {},
        )
        doc = transaction.model_dump()
        doc["transaction_type"] = transaction_type.value

        await db.equity_transactions.insert_one(doc)
        await db.profiles.update_one(
            {"user_id": user_id},
            {
                "$inc": {"shares_balance": amount},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            }
        )

        logger.info(
            "SHARES_GRANTED user_id=%s type=%s amount=%s transaction_id=%s",
            user_id, transaction_type.value, amount, transaction.transaction_id,
        )
        await create_audit_log(
            action=AuditAction.SHARES_GRANTED,
            user_id=user_id,
            resource_type="equity_transaction",
            resource_id=transaction.transaction_id,
            metadata={
                "transaction_type": transaction_type.value,
                "shares_amount": amount,
                "event_id": (metadata or {}).get("event_id"),
            },
        )
        return transaction

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    async def grant_signup_bonus(
        self,
        user_id: str,
        event_id: Optional[str] = None,
    ) -> Optional[EquityTransaction]:
        """Grant the one-time signup bonus.

        The bonus flag is claimed with a conditional update; a user who already
        holds it gets nothing. Returns None when not granted.
        """
        db = self._get_db()
        now = datetime.now(timezone.utc)

        claimed = await db.profiles.update_one(
            {"user_id": user_id, "signup_bonus_granted_at": None},
            {"$set": {"signup_bonus_granted_at": now}}
        )
        if claimed.modified_count == 0:
            logger.info(f"Signup bonus already granted for user {user_id} - skipping")
            return None

        return await self.record_transaction(
            user_id=user_id,
            amount=SIGNUP_BONUS_SHARES,
            transaction_type=EquityTransactionType.SIGNUP,
            description="Signup bonus - thank you for joining Ampel!",
            metadata={
                "granted_at": now.isoformat(),
                "granted_via": GRANTED_VIA_STRIPE_WEBHOOK,
                "event_id": event_id,
            },
        )

    async def grant_subscription_shares(
        self,
        user_id: str,
        tier: SubscriptionTier,
        subscription_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> EquityTransaction:
        amount = plan_registry.get_tier_shares(tier)
        return await self.record_transaction(
            user_id=user_id,
            amount=amount,
            transaction_type=EquityTransactionType.SUBSCRIPTION,
            description=f"Monthly subscription shares ({tier.value} tier)",
            metadata={
                "granted_at": datetime.now(timezone.utc).isoformat(),
                "granted_via": GRANTED_VIA_STRIPE_WEBHOOK,
                "event_id": event_id,
                "tier": tier.value,
                "subscription_id": subscription_id,
            },
        )

    async def grant_referral_pair(
        self,
        referred_user_id: str,
        referrer_user_id: str,
        referral_code: str,
        event_id: Optional[str] = None,
    ) -> List[EquityTransaction]:
        """Credit both sides of a referral: 25 to the new user, 50 to the referrer."""
        granted_at = datetime.now(timezone.utc).isoformat()
        received = await self.record_transaction(
            user_id=referred_user_id,
            amount=REFERRAL_RECEIVED_SHARES,
            transaction_type=EquityTransactionType.REFERRAL_RECEIVED,
            description="Referral bonus - you were referred by a friend!",
            metadata={
                "granted_at": granted_at,
                "granted_via": GRANTED_VIA_STRIPE_WEBHOOK,
                "event_id": event_id,
                "referred_by": referrer_user_id,
                "referral_code": referral_code,
            },
        )
        given = await self.record_transaction(
            user_id=referrer_user_id,
            amount=REFERRAL_GIVEN_SHARES,
            transaction_type=EquityTransactionType.REFERRAL_GIVEN,
            description="Referral reward - thank you for spreading the word!",
            metadata={
                "granted_at": granted_at,
                "granted_via": GRANTED_VIA_STRIPE_WEBHOOK,
                "event_id": event_id,
                "referred_user": referred_user_id,
                "referral_code": referral_code,
            },
        )
        return [received, given]

    # -------------------------------------------------------------------------
    # Reads / reconciliation
    # -------------------------------------------------------------------------

    async def list_transactions(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Ledger entries for a user, newest first."""
        db = self._get_db()
        cursor = db.equity_transactions.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def recompute_balance(self, user_id: str) -> Dict[str, int]:
        """Recompute shares_balance from the ledger and store it.

        Used for manual correction after a partially failed grant run.
        """
        db = self._get_db()
        profile = await db.profiles.find_one({"user_id": user_id}, {"_id": 0})
        if not profile:
            raise ValueError(f"Profile {user_id} not found")

        ledger_total = 0
        async for entry in db.equity_transactions.find({"user_id": user_id}, {"_id": 0}):
            ledger_total += entry.get("shares_amount", 0)

        previous = profile.get("shares_balance", 0)
        if previous != ledger_total:
            await db.profiles.update_one(
                {"user_id": user_id},
                {"$set": {"shares_balance": ledger_total, "updated_at": datetime.now(timezone.utc)}}
            )
            logger.warning(
                "BALANCE_RECONCILED user_id=%s previous=%s ledger_total=%s",
                user_id, previous, ledger_total,
            )
            await create_audit_log(
                action=AuditAction.BALANCE_RECONCILED,
                user_id=user_id,
                resource_type="profile",
                resource_id=user_id,
                metadata={"previous_balance": previous, "ledger_total": ledger_total},
            )

        return {"previous_balance": previous, "shares_balance": ledger_total}


equity_ledger = EquityLedgerService()
