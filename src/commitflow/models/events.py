"""Progress event models streamed from the workflow engine to clients."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Stage(StrEnum):
    """Failure classification carried by ``failed`` events."""

    DETECTING = "detecting"
    GENERATING = "generating"
    COMMITTING = "committing"
    PUSHING = "pushing"
    TRANSPORT = "transport"
    CANCELLED = "cancelled"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class StartedEvent(_Event):
    """Run accepted by the engine."""

    kind: Literal["started"] = "started"
    repository_path: str


class ChangesDetectedEvent(_Event):
    """Pending change set found in the repository."""

    kind: Literal["changes_detected"] = "changes_detected"
    count: int
    summary: str
    files: list[str] = Field(default_factory=list)
    insertions: int = 0
    deletions: int = 0


class MessageGeneratedEvent(_Event):
    """Commit message ready; ``fallback`` marks the templated degraded mode."""

    kind: Literal["message_generated"] = "message_generated"
    text: str
    fallback: bool = False


class CommittedEvent(_Event):
    kind: Literal["committed"] = "committed"
    commit_id: str


class PushedEvent(_Event):
    kind: Literal["pushed"] = "pushed"
    commit_id: str


class FailedEvent(_Event):
    """Terminal failure. ``commit_id`` is set when a local commit survives."""

    kind: Literal["failed"] = "failed"
    stage: Stage
    reason: str
    commit_id: str | None = None


class CompletedEvent(_Event):
    """Terminal success, including the nothing-to-commit short circuit."""

    kind: Literal["completed"] = "completed"
    commit_id: str | None = None
    duration_seconds: float = 0.0
    nothing_to_commit: bool = False


ProgressEvent = Annotated[
    StartedEvent
    | ChangesDetectedEvent
    | MessageGeneratedEvent
    | CommittedEvent
    | PushedEvent
    | FailedEvent
    | CompletedEvent,
    Field(discriminator="kind"),
]

CANONICAL_ORDER: tuple[str, ...] = (
    "started",
    "changes_detected",
    "message_generated",
    "committed",
    "pushed",
    "completed",
)
TERMINAL_KINDS = frozenset({"failed", "completed"})


class EventEnvelope(BaseModel):
    """Sequenced wrapper used for delivery, replay and deduplication."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    seq: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    event: ProgressEvent

    @property
    def terminal(self) -> bool:
        return self.event.kind in TERMINAL_KINDS


ENVELOPE_LIST_ADAPTER: TypeAdapter[list[EventEnvelope]] = TypeAdapter(list[EventEnvelope])


def is_terminal(event: ProgressEvent) -> bool:
    return event.kind in TERMINAL_KINDS


def follows_canonical_order(kinds: list[str]) -> bool:
    """Check a run's event kinds against the allowed prefix shape.

    ``failed`` may replace any event after ``started`` and must be last. The
    nothing-to-commit run is ``started, completed``.
    """
    if not kinds:
        return True
    if kinds == ["started", "completed"]:
        return True
    if "failed" in kinds:
        index = kinds.index("failed")
        if index != len(kinds) - 1 or index == 0:
            return False
        kinds = kinds[:index]
    return tuple(kinds) == CANONICAL_ORDER[: len(kinds)]
