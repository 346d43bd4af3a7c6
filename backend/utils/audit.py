from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Return only the fields whose value changed between two profile snapshots."""
    if not before or not after:
        return {}

    changed = {}
    for key in set(before.keys()) | set(after.keys()):
        if before.get(key) != after.get(key):
            changed[key] = {"from": before.get(key), "to": after.get(key)}
    return changed

async def create_audit_log(
    action: AuditAction,
    user_id: Optional[str] = None,
    actor: str = "SYSTEM",
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry.

    Args:
        action: The audit action type
        user_id: The affected user
        actor: Who caused it - "SYSTEM", "WEBHOOK:stripe", or the acting user id
        resource_type: Type of resource touched (e.g. 'profile', 'subscription')
        resource_id: ID of the specific resource
        before_state: State before the change (diffed against after_state)
        after_state: State after the change
        metadata: Additional metadata
    """
    try:
        db = database.get_db()

        enriched_metadata = metadata.copy() if metadata else {}
        diff = calculate_diff(before_state, after_state)
        if diff:
            enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor=actor,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=enriched_metadata if enriched_metadata else None,
        )

        doc = audit_log.model_dump(mode="json")
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} user_id={user_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""
