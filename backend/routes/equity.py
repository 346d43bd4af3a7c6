"""Equity routes - the caller's share ledger.

GET /api/equity/transactions - Ledger entries (newest first) and balance
"""
from fastapi import APIRouter, Query, Request

from middleware import onboarding_route_guard
from services.equity_ledger import equity_ledger

router = APIRouter(prefix="/api/equity", tags=["equity"])


@router.get("/transactions")
async def list_equity_transactions(request: Request, limit: int = Query(100, ge=1, le=500)):
    user = await onboarding_route_guard(request)
    transactions = await equity_ledger.list_transactions(user["user_id"], limit=limit)

    for entry in transactions:
        created = entry.get("created_at")
        if hasattr(created, "isoformat"):
            entry["created_at"] = created.isoformat()

    return {
        "shares_balance": user["profile"].get("shares_balance", 0),
        "transactions": transactions,
    }
