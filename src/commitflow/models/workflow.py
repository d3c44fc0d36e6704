"""Workflow run domain models."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from commitflow.models.events import Stage


class WorkflowState(StrEnum):
    """Engine state for one run."""

    IDLE = "idle"
    DETECTING = "detecting"
    GENERATING = "generating"
    COMMITTING = "committing"
    PUSHING = "pushing"
    DONE = "done"
    FAILED = "failed"


CANCELLABLE_STATES = frozenset({WorkflowState.IDLE, WorkflowState.DETECTING, WorkflowState.GENERATING})
TERMINAL_STATES = frozenset({WorkflowState.DONE, WorkflowState.FAILED})


class ChangeKind(StrEnum):
    """Kind of pending change, from ``git diff --name-status`` letters."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    COPIED = "copied"
    TYPE_CHANGED = "type_changed"
    UNMERGED = "unmerged"


class WorkflowRequest(BaseModel):
    """Start command payload, immutable for the run's lifetime."""

    model_config = ConfigDict(frozen=True)

    repository_path: Path
    hint: str | None = None
    message_prefix: str | None = None
    skip_staging: bool = False


@dataclass(slots=True, frozen=True)
class FileChange:
    """One path in the change set."""

    path: str
    kind: ChangeKind
    old_path: str | None = None


@dataclass(slots=True)
class ChangeSet:
    """Ordered staged changes plus the diff text fed to the generator."""

    files: list[FileChange] = field(default_factory=list)
    diff: str = ""
    insertions: int = 0
    deletions: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.files

    def counts(self) -> dict[ChangeKind, int]:
        totals: dict[ChangeKind, int] = {}
        for change in self.files:
            totals[change.kind] = totals.get(change.kind, 0) + 1
        return totals

    def summary(self) -> str:
        """Human summary such as ``2 modified, 1 added``."""
        return ", ".join(f"{count} {kind.value}" for kind, count in self.counts().items())


@dataclass(slots=True, frozen=True)
class StageFailure:
    stage: Stage
    reason: str


@dataclass(slots=True)
class WorkflowRun:
    """Live state of one run. Mutated only by the workflow engine."""

    request: WorkflowRequest
    run_id: str = field(default_factory=lambda: uuid4().hex)
    state: WorkflowState = WorkflowState.IDLE
    change_set: ChangeSet | None = None
    generated_message: str | None = None
    used_fallback: bool = False
    commit_id: str | None = None
    error: StageFailure | None = None
    nothing_to_commit: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def cancellable(self) -> bool:
        return self.state in CANCELLABLE_STATES
