"""Session, run and event stream routes."""

from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from commitflow.api.deps import get_session_registry
from commitflow.api.routes.common import require_run, require_session
from commitflow.api.schemas.sessions import (
    AcknowledgeRequest,
    AcknowledgeResponse,
    CancelResponse,
    EventsResponse,
    SessionResponse,
    StartRunRequest,
    StartRunResponse,
)
from commitflow.core.session import CancelRejectedError, RunInProgressError, SessionRegistry
from commitflow.models.workflow import WorkflowRequest

MAX_WAIT_SECONDS = 30.0

router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def open_session(
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    return SessionResponse(session_id=registry.open().session_id)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> Response:
    require_session(session_id, registry)
    registry.close(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{session_id}/runs",
    response_model=StartRunResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_run(
    session_id: str,
    request: StartRunRequest,
    registry: SessionRegistry = Depends(get_session_registry),
) -> StartRunResponse:
    session = require_session(session_id, registry)
    try:
        handle = session.start(
            WorkflowRequest(
                repository_path=Path(request.repository_path),
                hint=request.hint,
                message_prefix=request.message_prefix,
                skip_staging=request.skip_staging,
            )
        )
    except RunInProgressError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "run_in_progress", "run_id": exc.run_id},
        ) from exc
    return StartRunResponse(run_id=handle.run_id)


@router.get("/{session_id}/runs/{run_id}/events", response_model=EventsResponse)
async def stream_events(
    session_id: str,
    run_id: str,
    after: int = Query(default=-1, ge=-1),
    wait: float = Query(default=0.0, ge=0.0),
    registry: SessionRegistry = Depends(get_session_registry),
) -> EventsResponse:
    session = require_session(session_id, registry)
    handle = require_run(session, run_id)
    events = await handle.wait_events(after, min(wait, MAX_WAIT_SECONDS))
    return EventsResponse(events=events, terminal=handle.terminal)


@router.post("/{session_id}/runs/{run_id}/ack", response_model=AcknowledgeResponse)
async def acknowledge_events(
    session_id: str,
    run_id: str,
    request: AcknowledgeRequest,
    registry: SessionRegistry = Depends(get_session_registry),
) -> AcknowledgeResponse:
    session = require_session(session_id, registry)
    require_run(session, run_id)
    return AcknowledgeResponse(released=session.acknowledge(run_id, request.seq))


@router.post(
    "/{session_id}/runs/{run_id}/cancel",
    response_model=CancelResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def cancel_run(
    session_id: str,
    run_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> CancelResponse:
    session = require_session(session_id, registry)
    require_run(session, run_id)
    try:
        session.cancel(run_id)
    except CancelRejectedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return CancelResponse(accepted=True)
