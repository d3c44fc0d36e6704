"""Run journal routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from commitflow.api.deps import get_journal
from commitflow.api.schemas.sessions import EventsResponse, RunSummaryResponse, RunsResponse
from commitflow.db.store import RunJournal

router = APIRouter(prefix="/api/v1/runs", tags=["runs"])


def _require_journal(journal: RunJournal | None) -> RunJournal:
    if journal is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Run journal is disabled",
        )
    return journal


@router.get("", response_model=RunsResponse)
async def list_runs(
    limit: int = Query(default=20, ge=1, le=200),
    journal: RunJournal | None = Depends(get_journal),
) -> RunsResponse:
    runs = await _require_journal(journal).list_runs(limit=limit)
    return RunsResponse(
        items=[
            RunSummaryResponse(
                run_id=run.run_id,
                repository_path=run.repository_path,
                state=run.state,
                commit_id=run.commit_id,
                failed_stage=run.failed_stage,
                started_at=run.started_at,
                updated_at=run.updated_at,
            )
            for run in runs
        ]
    )


@router.get("/{run_id}/events", response_model=EventsResponse)
async def list_run_events(
    run_id: str,
    journal: RunJournal | None = Depends(get_journal),
) -> EventsResponse:
    store = _require_journal(journal)
    if await store.get_run(run_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    events = await store.list_events(run_id)
    return EventsResponse(events=events, terminal=bool(events) and events[-1].terminal)
