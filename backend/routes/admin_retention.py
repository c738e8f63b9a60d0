"""Admin Retention Routes - manual sweep trigger and cleanup overview.

Endpoints:
- POST /admin/retention/run - Run the retention sweep now (same runner as the scheduler)
- GET /admin/retention/stats - Soft-deleted children and their erasure deadlines
"""
from fastapi import APIRouter, HTTPException, Request, status
from middleware import require_admin
from services.billing_errors import PersistenceError
from services.retention_sweep import RetentionSweep
from job_runner import run_retention_sweep
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin/retention", tags=["admin-retention"])


@router.post("/run")
async def run_sweep(request: Request):
    admin = await require_admin(request)
    logger.info(f"Retention sweep triggered manually by {admin.get('user_id')}")

    try:
        return await run_retention_sweep(trigger="manual")
    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=e.to_detail()
        )


@router.get("/stats")
async def get_stats(request: Request):
    await require_admin(request)
    return await RetentionSweep().cleanup_stats()
