"""Session and run API schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from commitflow.models.events import EventEnvelope


class SessionResponse(BaseModel):
    session_id: str


class StartRunRequest(BaseModel):
    """Start command payload."""

    repository_path: str
    hint: str | None = None
    message_prefix: str | None = None
    skip_staging: bool = False


class StartRunResponse(BaseModel):
    run_id: str


class EventsResponse(BaseModel):
    """Envelopes after the requested cursor."""

    events: list[EventEnvelope]
    terminal: bool


class AcknowledgeRequest(BaseModel):
    seq: int = Field(ge=0)


class AcknowledgeResponse(BaseModel):
    released: bool


class CancelResponse(BaseModel):
    accepted: bool
    reason: str | None = None


class RunSummaryResponse(BaseModel):
    run_id: str
    repository_path: str
    state: str
    commit_id: str | None
    failed_stage: str | None
    started_at: datetime
    updated_at: datetime


class RunsResponse(BaseModel):
    items: list[RunSummaryResponse]
