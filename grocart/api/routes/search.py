"""Product search endpoint."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from grocart.api.deps import get_services
from grocart.search.orchestrator import InvalidSearchRequest
from grocart.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search", tags=["search"])


@router.get("")
async def search_products(
    q: str = Query(..., description="Product search term"),
    zip_code: str = Query(..., description="5-digit ZIP code"),
    radius: Optional[float] = Query(None, description="Search radius in miles"),
    limit: Optional[int] = Query(None, description="Maximum products returned"),
    force_refresh: bool = Query(False, description="Scrape every store regardless of freshness"),
    services: Services = Depends(get_services),
):
    """Find a product at stores near a ZIP code, scraping stale stores on demand."""
    try:
        result = await services.orchestrator.search(
            q, zip_code, radius=radius, limit=limit, force_refresh=force_refresh
        )
    except InvalidSearchRequest as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return result.to_dict()
