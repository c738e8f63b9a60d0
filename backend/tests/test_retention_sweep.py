"""
Retention sweep: erase only expired soft-deleted children, batch the writes,
count per-profile errors, and fail atomically on commit errors.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from pymongo.errors import OperationFailure

from models import ChildProfile, ParentProfile
from services.billing_errors import PersistenceError
from services.retention_sweep import RetentionSweep, is_expired, parse_deadline

NOW = datetime(2025, 6, 1, 2, 38, tzinfo=timezone.utc)


def _child(child_id, is_deleted=False, will_be_deleted=None):
    return {"child_id": child_id, "name": child_id.title(), "is_deleted": is_deleted, "will_be_deleted": will_be_deleted}


def test_deadline_formats():
    assert parse_deadline("2025-06-01T00:00:00Z") == datetime(2025, 6, 1, tzinfo=timezone.utc)
    assert parse_deadline(datetime(2025, 6, 1)) == datetime(2025, 6, 1, tzinfo=timezone.utc)
    assert parse_deadline(None) is None


def test_expiry_requires_flag_and_deadline():
    past = NOW - timedelta(days=1)
    assert is_expired(_child("a", True, past), NOW)
    assert is_expired(_child("b", True, NOW), NOW)
    assert not is_expired(_child("c", False, past), NOW)
    assert not is_expired(_child("d", True, NOW + timedelta(seconds=1)), NOW)
    assert not is_expired(_child("e", True, None), NOW)


class TestSweep:

    @pytest.mark.asyncio
    async def test_erases_only_expired_children(self, fake_db):
        profile = ParentProfile(
            profile_id="parent-1",
            children=[
                ChildProfile(child_id="a", is_deleted=True, deleted_at=NOW - timedelta(days=31),
                             will_be_deleted=NOW - timedelta(days=1)),
                ChildProfile(child_id="b", is_deleted=True, will_be_deleted=NOW + timedelta(days=1)),
            ],
        )
        fake_db.profiles.docs.append(profile.model_dump())

        result = await RetentionSweep().run(now=NOW)

        assert result.deleted_count == 1
        assert result.error_count == 0
        assert result.processed_profiles == 1
        profile = fake_db.profiles.docs[0]
        assert [c["child_id"] for c in profile["children"]] == ["b"]
        assert profile["last_cleanup"] == NOW

    @pytest.mark.asyncio
    async def test_nothing_expired_means_no_writes(self, fake_db):
        fake_db.profiles.docs.extend([
            {"profile_id": "parent-1", "children": [_child("a"), _child("b", True, NOW + timedelta(days=3))]},
            {"profile_id": "parent-2", "children": []},
        ])

        result = await RetentionSweep().run(now=NOW)

        assert result.deleted_count == 0
        assert result.processed_profiles == 2
        assert fake_db.profiles.writes == []

    @pytest.mark.asyncio
    async def test_all_writes_go_in_one_batch(self, fake_db):
        for i in range(3):
            fake_db.profiles.docs.append({
                "profile_id": f"parent-{i}",
                "children": [_child(f"kid{i}", True, "2025-05-01T00:00:00+00:00"), _child(f"keep{i}")],
            })

        result = await RetentionSweep().run(now=NOW)

        assert result.deleted_count == 3
        assert result.updated_profiles == 3
        assert [w[0] for w in fake_db.profiles.writes] == ["bulk_write"]

    @pytest.mark.asyncio
    async def test_rerun_is_a_no_op(self, fake_db):
        fake_db.profiles.docs.append({"profile_id": "parent-1", "children": [_child("a", True, NOW - timedelta(days=1))]})
        sweep = RetentionSweep()

        await sweep.run(now=NOW)
        second = await sweep.run(now=NOW)

        assert second.deleted_count == 0
        assert len(fake_db.profiles.writes) == 1

    @pytest.mark.asyncio
    async def test_bad_profile_counts_error_and_sweep_continues(self, fake_db):
        fake_db.profiles.docs.extend([
            {"profile_id": "broken", "children": [_child("x", True, "not-a-date")]},
            {"profile_id": "parent-2", "children": [_child("a", True, NOW - timedelta(days=1)), _child("b")]},
        ])

        result = await RetentionSweep().run(now=NOW)

        assert result.error_count == 1
        assert result.deleted_count == 1
        by_id = {p["profile_id"]: p for p in fake_db.profiles.docs}
        assert [c["child_id"] for c in by_id["parent-2"]["children"]] == ["b"]
        assert len(by_id["broken"]["children"]) == 1

    @pytest.mark.asyncio
    async def test_commit_failure_raises_and_erases_nothing(self, fake_db):
        fake_db.profiles.docs.append({"profile_id": "parent-1", "children": [_child("a", True, NOW - timedelta(days=1))]})
        fake_db.profiles.bulk_write = AsyncMock(side_effect=OperationFailure("transaction aborted"))

        with pytest.raises(PersistenceError):
            await RetentionSweep().run(now=NOW)

        assert len(fake_db.profiles.docs[0]["children"]) == 1


class TestCleanupStats:

    @pytest.mark.asyncio
    async def test_stats_report_deadlines(self, fake_db):
        fake_db.profiles.docs.extend([
            {"profile_id": "parent-1", "children": [
                _child("a", True, NOW - timedelta(days=1)),
                _child("b", True, NOW + timedelta(days=2, hours=1)),
                _child("c"),
            ]},
            {"profile_id": "parent-2", "children": [_child("d")]},
        ])

        stats = await RetentionSweep().cleanup_stats(now=NOW)

        assert stats["total_profiles"] == 2
        assert stats["profiles_with_deleted_children"] == 1
        assert stats["deleted_children"] == 2
        assert stats["expired_children"] == 1
        days = {c["child_id"]: c["days_until_deletion"] for c in stats["children"]}
        assert days == {"a": 0, "b": 3}
        assert fake_db.writes(exclude=()) == []


@pytest.mark.asyncio
async def test_job_runner_reports_counts(fake_db):
    from job_runner import run_retention_sweep

    fake_db.profiles.docs.append({
        "profile_id": "parent-1",
        "children": [_child("a", True, "2000-01-01T00:00:00Z"), _child("b", True, "2000-01-02T00:00:00Z")],
    })

    summary = await run_retention_sweep(trigger="manual")

    assert summary == {"message": "Child profiles erased: 2", "count": 2, "errors": 0}
    assert fake_db.profiles.docs[0]["children"] == []
    audit = fake_db.audit_logs.docs[0]
    assert audit["metadata"]["trigger"] == "manual"
