"""
Trip history endpoints
======================

GET /api/v1/trips/history?page=&limit= -- completed trips of the caller
"""

from fastapi import APIRouter, Depends, Query, Request

from ridedispatch.api.dependencies import get_actor, get_dispatch
from ridedispatch.api.middleware import RATE_LIMIT, limiter
from ridedispatch.api.schemas import TripCompletionResponse, TripHistoryResponse
from ridedispatch.domain.entities import Actor
from ridedispatch.services.dispatch import DispatchService

router = APIRouter(prefix="/trips", tags=["trips"])


@router.get(
    "/history",
    response_model=TripHistoryResponse,
    summary="Paginated trip history for the calling client or driver",
)
@limiter.limit(RATE_LIMIT)
async def trip_history(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    trips, total = await dispatch.trip_history(actor, page=page, limit=limit)
    return TripHistoryResponse(
        trips=[TripCompletionResponse.model_validate(t) for t in trips],
        total=total,
        page=page,
        limit=limit,
    )
