"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" and "count" for the admin UI.
"""
import logging

logger = logging.getLogger(__name__)


async def run_retention_sweep(trigger: str = "scheduled"):
    try:
        from services.retention_sweep import RetentionSweep
        result = await RetentionSweep().run(trigger=trigger)
        logger.info(
            f"Retention sweep job completed: {result.deleted_count} child profiles erased, "
            f"{result.error_count} errors"
        )
        return {
            "message": f"Child profiles erased: {result.deleted_count}",
            "count": result.deleted_count,
            "errors": result.error_count,
        }
    except Exception as e:
        logger.error(f"Retention sweep job failed: {e}")
        raise
