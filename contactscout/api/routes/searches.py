from __future__ import annotations

import json as _json
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sse_starlette.sse import EventSourceResponse

from contactscout.api.deps import get_orchestrator, get_user_id
from contactscout.models.schemas import (
    CancellationResponse,
    CancelRequest,
    SearchRequest,
    SearchStatusResponse,
    SearchSubmitResponse,
    ProgressResponse,
    StatisticsResponse,
)
from contactscout.models.search import InvalidSearchConfiguration, SearchStatusView
from contactscout.services import logger as log_service
from contactscout.services import streaming
from contactscout.services.orchestrator import AccessDenied, SearchOrchestrationService
from contactscout.services.scheduler import SchedulerClosed

router = APIRouter(prefix="/api/searches", tags=["searches"])


async def _load_status(
    orchestrator: SearchOrchestrationService, search_id: str, user_id: str
) -> SearchStatusView:
    try:
        view = await orchestrator.get_search_status(search_id, user_id)
    except AccessDenied:
        raise HTTPException(status_code=403, detail="Access denied")
    if view is None:
        raise HTTPException(status_code=404, detail="Search not found")
    return view


@router.post("", response_model=SearchSubmitResponse, status_code=202)
async def submit_search(
    request: SearchRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: SearchOrchestrationService = Depends(get_orchestrator),
):
    """Queue a new search. Poll the status or stream progress with the returned id."""
    try:
        result = await orchestrator.submit_search(
            user_id,
            request.to_configuration(),
            priority=request.priority,
            timeout=request.timeout,
        )
    except InvalidSearchConfiguration as e:
        raise HTTPException(status_code=422, detail=e.errors)
    except SchedulerClosed:
        raise HTTPException(status_code=503, detail="Service is shutting down")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return SearchSubmitResponse(
        search_id=result.search_id,
        status=result.status.value,
        progress=ProgressResponse.from_snapshot(result.progress),
    )


@router.get("/statistics", response_model=StatisticsResponse)
async def search_statistics(
    window_days: float | None = Query(default=None, gt=0),
    user_id: str = Depends(get_user_id),
    orchestrator: SearchOrchestrationService = Depends(get_orchestrator),
):
    window = timedelta(days=window_days) if window_days else None
    stats = await orchestrator.get_search_statistics(user_id, window)
    return StatisticsResponse.from_statistics(stats)


@router.get("/{search_id}", response_model=SearchStatusResponse)
async def get_search(
    search_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: SearchOrchestrationService = Depends(get_orchestrator),
):
    view = await _load_status(orchestrator, search_id, user_id)
    return SearchStatusResponse.from_view(view)


@router.post("/{search_id}/cancel", response_model=CancellationResponse)
async def cancel_search(
    search_id: str,
    request: CancelRequest | None = None,
    user_id: str = Depends(get_user_id),
    orchestrator: SearchOrchestrationService = Depends(get_orchestrator),
):
    result = await orchestrator.cancel_search(search_id, user_id, request.reason if request else None)
    return CancellationResponse(
        search_id=result.search_id,
        success=result.success,
        message=result.message,
        cancelled_at=result.cancelled_at,
    )


@router.get("/{search_id}/stream")
async def stream_search(
    search_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: SearchOrchestrationService = Depends(get_orchestrator),
):
    """SSE endpoint that streams progress snapshots until the search ends."""
    view = await _load_status(orchestrator, search_id, user_id)
    subscription = orchestrator.subscribe(search_id)
    if view.status.is_terminal and not subscription.closed:
        subscription.push(view.progress)
        subscription.close()

    async def event_generator():
        try:
            async for snapshot in subscription:
                event = streaming.from_snapshot(snapshot)
                yield {
                    "event": event.event.value,
                    "data": _json.dumps(event.data, default=str),
                }
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in progress stream",
                error=str(e),
                search_id=search_id,
            )
            error_event = streaming.error("Progress stream failed unexpectedly.", search_id)
            yield {
                "event": error_event.event.value,
                "data": _json.dumps(error_event.data),
            }
        finally:
            subscription.close()

    return EventSourceResponse(event_generator())
