"""FastAPI dependencies."""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from grocart.config import settings
from grocart.db.session import get_db
from grocart.services import Services


def get_services(request: Request) -> Services:
    """Pipeline components built during app startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return services


async def require_admin_api_key(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")
) -> None:
    """
    Protect admin endpoints when ``settings.admin_api_key`` is configured.

    Raises:
        HTTPException: 401 if the header is missing, 403 if it does not match
    """
    if not settings.admin_api_key:
        return

    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Admin-Key header required",
        )

    if x_admin_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
