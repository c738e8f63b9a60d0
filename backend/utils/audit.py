from database import database
from models import AuditLog, AuditAction
from datetime import datetime
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

_MISSING = object()


def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Field-level diff of two flat state snapshots.

    Keys only in ``after`` land in "added", keys only in ``before`` in
    "removed", and keys whose value moved in "changed" as {"from", "to"}.
    Empty sections are omitted.
    """
    before = before or {}
    after = after or {}
    diff: Dict[str, Any] = {"added": {}, "removed": {}, "changed": {}}

    for key in sorted(set(before) | set(after)):
        old = before.get(key, _MISSING)
        new = after.get(key, _MISSING)
        if old is _MISSING:
            diff["added"][key] = new
        elif new is _MISSING:
            diff["removed"][key] = old
        elif old != new:
            diff["changed"][key] = {"from": old, "to": new}

    return {section: values for section, values in diff.items() if values}

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    auto_diff: bool = True
) -> str:
    """Append an entry to audit_logs and return its audit_id.

    actor_role is "SYSTEM" for webhooks, reconciliation and the sweep. When both
    state snapshots are given the field diff is stored under metadata["diff"].
    Storage failures are logged and reported as an empty id; billing and
    retention writes never roll back because of the audit trail.
    """
    try:
        db = database.get_db()

        diff = None
        if auto_diff and before_state and after_state:
            diff = calculate_diff(before_state, after_state)

        enriched_metadata = metadata.copy() if metadata else {}
        if diff:
            enriched_metadata["diff"] = diff
            enriched_metadata["changes_count"] = sum(len(section) for section in diff.values())

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata if enriched_metadata else None,
        )

        doc = audit_log.model_dump()
        doc["timestamp"] = doc["timestamp"].isoformat() if isinstance(doc["timestamp"], datetime) else doc["timestamp"]

        await db.audit_logs.insert_one(doc)
        logger.info(
            "AUDIT_LOG_CREATED action=%s resource_type=%s resource_id=%s changes=%s",
            action.value, resource_type, resource_id, enriched_metadata.get("changes_count", 0),
        )
        return audit_log.audit_id
    except Exception as e:
        logger.error("AUDIT_LOG_FAILED action=%s resource_id=%s error=%s", action, resource_id, e)
        return ""

