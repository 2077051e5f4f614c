"""Scrape queue status and manual refresh routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from grocart.api.deps import get_db, get_services, require_admin_api_key
from grocart.config import settings
from grocart.search.orchestrator import ZIP_RE
from grocart.services import Services
from grocart.worker.job_queue import EnqueueResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queue", tags=["queue"])


def _enqueued(handle: EnqueueResult) -> dict:
    return {"created": handle.created, "mode": handle.mode, "job": handle.job.to_dict()}


@router.get("/status")
async def queue_status(services: Services = Depends(get_services)):
    """Counts, in-flight targets, active/waiting jobs and recent history."""
    return await services.job_queue.get_status()


@router.post("/refresh/{zip_code}", dependencies=[Depends(require_admin_api_key)])
async def refresh_zip(zip_code: str, services: Services = Depends(get_services)):
    """Force a refresh of every store near a ZIP code."""
    if not ZIP_RE.match(zip_code):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="ZIP code must be 5 digits"
        )
    handle = await services.task_runner.enqueue_zip_refresh(zip_code, trigger="manual")
    logger.info(f"Manual refresh for {zip_code}: {handle.job_id} ({handle.status})")
    return _enqueued(handle)


@router.get("/popular-stores")
async def popular_stores(
    days: int = Query(settings.stale_refresh_days, ge=1, le=90),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
):
    """Stores a popular-term refresh would visit: active, with recent prices."""
    stores = await services.task_runner.freshness.get_stores_needing_refresh(db, days=days)
    return {"days": days, "count": len(stores), "stores": [store.to_dict() for store in stores]}


@router.post("/refresh-popular", dependencies=[Depends(require_admin_api_key)])
async def refresh_popular(services: Services = Depends(get_services)):
    """Re-scrape popular terms at recently active stores."""
    return _enqueued(await services.task_runner.enqueue_popular_refresh())


@router.post("/weekly-refresh", dependencies=[Depends(require_admin_api_key)])
async def run_weekly_refresh(services: Services = Depends(get_services)):
    """Enqueue the weekly sweep now instead of waiting for its schedule."""
    return _enqueued(await services.task_runner.enqueue_weekly_refresh())
