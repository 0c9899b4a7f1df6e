from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse

from agent_runs.api.dependencies import get_coordinator
from agent_runs.runtime.coordinator import StreamCoordinator, parse_resume_cursor


router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-store",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/runs/{run_id}/stream")
def stream_run(
    run_id: str,
    request: Request,
    after_event_id: str | None = Query(default=None, alias="afterEventId"),
    after: str | None = Query(default=None),
    last_event_id: str | None = Header(default=None, alias="Last-Event-ID"),
    coordinator: StreamCoordinator = Depends(get_coordinator),
) -> StreamingResponse:
    """Server-sent events for one run: replays events after the resume cursor, then drives the run."""
    cursor = parse_resume_cursor(after_event_id, after, last_event_id)
    return StreamingResponse(
        coordinator.stream(run_id, after_event_id=cursor, is_closed=request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
