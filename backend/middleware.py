from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import OnboardingRoute
from database import database

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        return None
    payload = decode_access_token(token)

    if not payload:
        return None

    # Normalise: the auth provider puts the user id in `sub`
    payload["user_id"] = payload["sub"]
    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def onboarding_route_guard(request: Request) -> dict:
    """Guard for main-app routes - the user must have finished onboarding.

    Anything else gets a 403 with X-Redirect pointing at the route the
    onboarding state machine says the user belongs on.
    """
    from services.onboarding_state import resolve_onboarding_route

    user = await require_auth(request)

    db = database.get_db()
    profile = await db.profiles.find_one(
        {"user_id": user["user_id"]},
        {"_id": 0}
    )

    route = resolve_onboarding_route(profile, has_session=True)
    if route != OnboardingRoute.MAIN_APP:
        await log_route_guard_redirect(
            user["user_id"],
            str(request.url.path),
            route.value
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Onboarding incomplete",
            headers={"X-Redirect": f"/{route.value}"}
        )

    user["profile"] = profile
    return user

async def log_route_guard_redirect(user_id: str, path: str, redirect_to: str):
    """Log route guard redirect for audit."""
    from utils.audit import create_audit_log
    from models import AuditAction

    logger.info(f"ROUTE_GUARD_REDIRECT user_id={user_id} path={path} redirect_to={redirect_to}")
    await create_audit_log(
        action=AuditAction.ROUTE_GUARD_REDIRECT,
        user_id=user_id,
        metadata={
            "path": path,
            "redirect_to": redirect_to
        }
    )
