from __future__ import annotations

import json as _json

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from deepresearch.api.deps import run_manager
from deepresearch.models.errors import InvalidOutline
from deepresearch.models.schemas import CancelRunResponse, StartRunRequest, StartRunResponse
from deepresearch.services import logger as log_service
from deepresearch.services import streaming
from deepresearch.services.run_manager import RunManager

router = APIRouter(prefix="/api/runs", tags=["runs"])


@router.post("", response_model=StartRunResponse, response_model_by_alias=True)
async def start_run(request: StartRunRequest, manager: RunManager = Depends(run_manager)):
    """Start researching an approved outline. Returns the run id to stream."""
    try:
        run_id = await manager.start_run(request.topic, request.sections)
    except InvalidOutline as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RuntimeError as e:
        log_service.log_event("run_rejected", "Research service unavailable", error=str(e))
        raise HTTPException(status_code=503, detail=str(e))
    return StartRunResponse(run_id=run_id)


@router.get("/{run_id}")
async def get_run(run_id: str, manager: RunManager = Depends(run_manager)):
    snapshot = manager.get_run(run_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return snapshot


@router.delete("/{run_id}", response_model=CancelRunResponse, response_model_by_alias=True)
async def cancel_run(run_id: str, manager: RunManager = Depends(run_manager)):
    if not manager.cancel_run(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    return CancelRunResponse(run_id=run_id)


@router.get("/{run_id}/stream")
async def stream_run(run_id: str, manager: RunManager = Depends(run_manager)):
    """SSE endpoint streaming the run's progress events, keyed by identity."""
    try:
        events = await manager.subscribe(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Run not found")
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))

    async def event_generator():
        async for event in events:
            sse = streaming.to_sse(event)
            yield {
                "event": sse.event.value,
                "id": sse.id,
                "data": _json.dumps(sse.data),
            }

    return EventSourceResponse(event_generator())
