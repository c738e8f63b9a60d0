"""
Run the child profile retention sweep by hand.

Usage (from backend/):
  python -m scripts.run_retention_sweep             # erase expired soft-deleted children
  python -m scripts.run_retention_sweep --stats     # report only, no writes
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database


async def run(stats_only: bool = False) -> bool:
    from services.retention_sweep import RetentionSweep

    sweep = RetentionSweep()
    if stats_only:
        stats = await sweep.cleanup_stats()
        print(
            f"Profiles: {stats['total_profiles']}, with deleted children: {stats['profiles_with_deleted_children']}, "
            f"deleted children: {stats['deleted_children']}, past deadline: {stats['expired_children']}"
        )
        for child in stats["children"]:
            print(f"  {child['profile_id']} / {child['child_id']}: {child['days_until_deletion']} day(s) left")
        return True

    result = await sweep.run(trigger="manual")
    print(
        f"Erased {result.deleted_count} child profile(s) across {result.updated_profiles} profile(s); "
        f"{result.error_count} error(s), {result.processed_profiles} scanned"
    )
    return result.error_count == 0


def main():
    parser = argparse.ArgumentParser(description="Run the child profile retention sweep")
    parser.add_argument("--stats", action="store_true", help="Only report soft-deleted children and deadlines")
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            return await run(stats_only=args.stats)
        finally:
            await database.close()

    ok = asyncio.run(_())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
