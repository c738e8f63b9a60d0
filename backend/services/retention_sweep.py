"""Retention sweep - permanent erasure of soft-deleted child profiles.

A child profile is erased only when it is flagged ``is_deleted`` AND its
``will_be_deleted`` deadline has passed. Every parent profile is scanned in
order; the rewrites are queued and committed together in one transaction at
the end, so a failed commit leaves every profile untouched. A failure while
evaluating one profile is counted and the sweep moves on.
"""
import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo import UpdateOne
from pymongo.errors import PyMongoError

from database import database
from models import AuditAction, utc_now
from services.billing_errors import PersistenceError
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


@dataclass
class RetentionSweepResult:
    deleted_count: int = 0
    error_count: int = 0
    processed_profiles: int = 0
    updated_profiles: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def parse_deadline(value: Any) -> Optional[datetime]:
    """``will_be_deleted`` as an aware UTC datetime. Naive values are UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise ValueError(f"Unsupported will_be_deleted value: {value!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(child: Dict[str, Any], now: datetime) -> bool:
    if child.get("is_deleted") is not True:
        return False
    deadline = parse_deadline(child.get("will_be_deleted"))
    return deadline is not None and now >= deadline


def partition_children(
    children: List[Dict[str, Any]], now: datetime
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split children into (expired, retained), keeping the retained order."""
    expired, retained = [], []
    for child in children:
        (expired if is_expired(child, now) else retained).append(child)
    return expired, retained


class RetentionSweep:
    """Scans parent profiles and erases expired soft-deleted children."""

    async def run(self, now: Optional[datetime] = None, trigger: str = "scheduled") -> RetentionSweepResult:
        """Run one sweep.

        Args:
            now: Reference time (defaults to current UTC time)
            trigger: "scheduled" or "manual", recorded in the audit entry

        Raises:
            PersistenceError: the batched commit failed; nothing was erased
        """
        now = now or utc_now()
        db = database.get_db()
        result = RetentionSweepResult()
        operations = []
        queued_deletions = 0

        async for profile in db.profiles.find({}, {"_id": 0}):
            result.processed_profiles += 1
            profile_id = profile.get("profile_id")
            try:
                expired, retained = partition_children(profile.get("children") or [], now)
                if not expired:
                    continue
                operations.append(
                    UpdateOne(
                        {"profile_id": profile["profile_id"]},
                        {"$set": {"children": retained, "last_cleanup": now}},
                    )
                )
                queued_deletions += len(expired)
                logger.info(
                    f"Profile {profile_id}: removing {len(expired)} expired child profile(s) "
                    f"{[c.get('child_id') for c in expired]}"
                )
            except Exception as e:
                result.error_count += 1
                logger.error(f"Retention sweep failed for profile {profile_id}: {e}")

        if operations:
            try:
                async with database.transaction() as txn:
                    await db.profiles.bulk_write(operations, ordered=True, session=txn)
            except PyMongoError as e:
                logger.error(f"Retention sweep commit failed ({len(operations)} profiles): {e}")
                raise PersistenceError(
                    f"Retention sweep commit failed: {e}",
                    {"queued_profiles": len(operations), "queued_deletions": queued_deletions},
                )
            result.deleted_count = queued_deletions
            result.updated_profiles = len(operations)

        logger.info(
            f"Retention sweep completed: deleted_count={result.deleted_count} "
            f"error_count={result.error_count} processed_profiles={result.processed_profiles}"
        )
        await create_audit_log(
            action=AuditAction.RETENTION_SWEEP_COMPLETED,
            actor_role="SYSTEM",
            resource_type="profile",
            metadata={**result.to_dict(), "trigger": trigger, "run_at": now.isoformat()},
        )
        return result

    async def cleanup_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Read-only overview of soft-deleted children and their erasure deadlines."""
        now = now or utc_now()
        db = database.get_db()

        total_profiles = 0
        profiles_with_deleted = 0
        expired_children = 0
        pending: List[Dict[str, Any]] = []

        async for profile in db.profiles.find({}, {"_id": 0}):
            total_profiles += 1
            deleted = [c for c in profile.get("children") or [] if c.get("is_deleted") is True]
            if not deleted:
                continue
            profiles_with_deleted += 1
            for child in deleted:
                try:
                    deadline = parse_deadline(child.get("will_be_deleted"))
                except ValueError:
                    deadline = None
                expired = deadline is not None and now >= deadline
                if expired:
                    expired_children += 1
                days_left = None
                if deadline is not None:
                    days_left = max(0, math.ceil((deadline - now).total_seconds() / 86400))
                pending.append({
                    "profile_id": profile.get("profile_id"),
                    "child_id": child.get("child_id"),
                    "name": child.get("name"),
                    "deleted_at": child.get("deleted_at"),
                    "will_be_deleted": deadline,
                    "days_until_deletion": days_left,
                    "expired": expired,
                })

        return {
            "total_profiles": total_profiles,
            "profiles_with_deleted_children": profiles_with_deleted,
            "deleted_children": len(pending),
            "expired_children": expired_children,
            "children": pending,
        }
