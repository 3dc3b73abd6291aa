from database import database
from models import AuditLog, AuditAction, ActorRole
from datetime import datetime
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with only the non-empty categories of:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}
    if not before:
        return {"added": after}
    if not after:
        return {"removed": before}

    diff = {"added": {}, "removed": {}, "changed": {}}
    for key in set(before.keys()) | set(after.keys()):
        if key not in before:
            diff["added"][key] = after[key]
        elif key not in after:
            diff["removed"][key] = before[key]
        elif before[key] != after[key]:
            diff["changed"][key] = {"from": before[key], "to": after[key]}

    return {k: v for k, v in diff.items() if v}

def _jsonable(state: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if state is None:
        return None
    return {
        k: (v.isoformat() if isinstance(v, datetime) else v.value if hasattr(v, "value") else v)
        for k, v in state.items()
    }

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[ActorRole] = None,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    auto_diff: bool = True
) -> str:
    """Create an audit log entry for a billing or payout transition.

    Args:
        action: The audit action type
        actor_role: USER for user-initiated actions, SYSTEM for webhooks
        actor_id: ID of the actor (user_id or Stripe event id)
        user_id: ID of the affected user
        resource_type: e.g. 'subscription', 'payout_account'
        resource_id: Stripe subscription / account id
        before_state: State before the change
        after_state: State after the change
        metadata: Additional metadata
        auto_diff: If True, store the before/after diff in metadata
    """
    try:
        db = database.get_db()
        before_state = _jsonable(before_state)
        after_state = _jsonable(after_state)

        enriched_metadata = dict(metadata) if metadata else {}
        if auto_diff and before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
        )

        await db.audit_logs.insert_one(audit_log.model_dump(mode="json"))
        logger.info(f"Audit log created: {action.value} user_id={user_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

