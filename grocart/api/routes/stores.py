"""Store discovery routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from grocart.api.deps import get_services, require_admin_api_key
from grocart.config import settings
from grocart.search.orchestrator import ZIP_RE
from grocart.services import Services

router = APIRouter(prefix="/api/stores", tags=["stores"])


def _check_area(zip_code: str, radius: float) -> None:
    if not ZIP_RE.match(zip_code):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="ZIP code must be 5 digits"
        )
    if radius <= 0 or radius > settings.max_radius_miles:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Radius must be greater than 0 and at most {settings.max_radius_miles:g} miles",
        )


@router.get("")
async def list_stores(
    zip_code: str = Query(...),
    radius: Optional[float] = Query(None),
    chain: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    """Stores near a ZIP code across all (or one) supported chains."""
    radius = settings.default_radius_miles if radius is None else radius
    _check_area(zip_code, radius)

    stores = await services.store_discovery.discover_stores(
        zip_code, radius, chains=[chain] if chain else None
    )
    return {
        "zip_code": zip_code,
        "radius": radius,
        "count": len(stores),
        "stores": [store.to_dict() for store in stores],
    }


@router.get("/chains")
async def list_chains(services: Services = Depends(get_services)):
    """Chains with a store locator, and whether each can be searched live."""
    return {
        "chains": [
            {"chain": chain, "searchable": services.sources.has_chain(chain)}
            for chain in services.store_discovery.chains
        ]
    }


@router.get("/cache/stats")
async def cache_stats(services: Services = Depends(get_services)):
    return services.store_cache.get_stats()


@router.delete("/cache", dependencies=[Depends(require_admin_api_key)])
async def clear_store_cache(
    chain: str = Query(...),
    zip_code: str = Query(...),
    radius: Optional[float] = Query(None),
    services: Services = Depends(get_services),
):
    """Drop one cached (chain, ZIP, radius) store list."""
    radius = settings.default_radius_miles if radius is None else radius
    _check_area(zip_code, radius)
    cleared = await services.store_discovery.clear_cache(chain, zip_code, radius)
    return {"cleared": cleared, "chain": chain, "zip_code": zip_code, "radius": radius}
