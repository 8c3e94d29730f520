"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- liveness plus the number of open realtime connections
"""

from fastapi import APIRouter, Depends

from ridedispatch.api.dependencies import get_services
from ridedispatch.api.schemas import HealthResponse
from ridedispatch.bootstrap import Services

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(services: Services = Depends(get_services)):
    return HealthResponse(connections=services.hub.connection_count())
