"""Workflow engine: the stage → generate → commit → push state machine."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TypeAlias, TypeVar

from commitflow.core.git_manager import GitCommandError, GitResult, is_lock_contention
from commitflow.core.message_generator import (
    GenerationError,
    MessageGenerator,
    render_fallback_message,
    validate_message,
)
from commitflow.core.retry import RetryPolicy, Sleeper, run_with_retry
from commitflow.models.events import (
    ChangesDetectedEvent,
    CommittedEvent,
    CompletedEvent,
    FailedEvent,
    MessageGeneratedEvent,
    ProgressEvent,
    PushedEvent,
    Stage,
    StartedEvent,
)
from commitflow.models.workflow import (
    ChangeSet,
    StageFailure,
    WorkflowRun,
    WorkflowState,
)

logger = logging.getLogger(__name__)

EventSink: TypeAlias = Callable[[ProgressEvent], Awaitable[None]]
Clock: TypeAlias = Callable[[], float]

T = TypeVar("T")


class GitCollaborator(Protocol):
    """Version-control operations the engine depends on."""

    async def detect_changes(self, repo_path: Path, *, stage_all: bool = True) -> ChangeSet:
        """Return the pending change set."""

    async def commit(self, repo_path: Path, message: str) -> str:
        """Create a commit and return its id."""

    async def push(self, repo_path: Path, *, remote: str = "origin", branch: str = "HEAD") -> GitResult:
        """Push the current branch."""


class StageError(RuntimeError):
    """A stage failed after any permitted retry."""

    def __init__(self, stage: Stage, cause: str, *, error: Exception | None = None) -> None:
        super().__init__(f"{stage.value}: {cause}")
        self.stage = stage
        self.cause = cause
        self.error = error


class RunCancelled(RuntimeError):
    """The client cancelled the run before any commit was attempted."""


@dataclass(slots=True, frozen=True)
class EngineSettings:
    """Per-stage timeouts and retry knobs."""

    detect_timeout: float = 30.0
    generate_timeout: float = 60.0
    commit_timeout: float = 30.0
    push_timeout: float = 60.0
    commit_retry_delay: float = 1.0
    generation_attempts: int = 1
    generation_retry_delay: float = 1.0
    fallback_enabled: bool = False
    max_message_length: int = 2000
    max_subject_length: int = 200
    remote: str = "origin"
    branch: str = "HEAD"

    def timeout_for(self, stage: Stage) -> float:
        return {
            Stage.DETECTING: self.detect_timeout,
            Stage.GENERATING: self.generate_timeout,
            Stage.COMMITTING: self.commit_timeout,
            Stage.PUSHING: self.push_timeout,
        }[stage]


def _commit_lock_retryable(exc: Exception) -> bool:
    return isinstance(exc, StageError) and exc.error is not None and is_lock_contention(exc.error)


def _generation_retryable(exc: Exception) -> bool:
    return isinstance(exc, StageError)


class WorkflowEngine:
    """Sequence one run through its stages, emitting one event per transition."""

    def __init__(
        self,
        git: GitCollaborator,
        generator: MessageGenerator,
        settings: EngineSettings | None = None,
        *,
        sleeper: Sleeper | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._git = git
        self._generator = generator
        self._settings = settings or EngineSettings()
        self._sleep = sleeper or asyncio.sleep
        self._clock = clock or time.monotonic
        self._commit_policy = RetryPolicy(
            max_attempts=2,
            delay_seconds=self._settings.commit_retry_delay,
            retryable=_commit_lock_retryable,
        )
        self._generation_policy = RetryPolicy(
            max_attempts=self._settings.generation_attempts,
            delay_seconds=self._settings.generation_retry_delay,
            retryable=_generation_retryable,
        )

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def execute(self, run: WorkflowRun, emit: EventSink) -> None:
        """Drive ``run`` to a terminal state. Never raises for stage failures."""
        started = self._clock()
        repo_path = run.request.repository_path
        await emit(StartedEvent(repository_path=str(repo_path)))

        try:
            self._transition(run, WorkflowState.DETECTING)
            change_set = await self._call_stage(
                run,
                Stage.DETECTING,
                lambda: self._git.detect_changes(repo_path, stage_all=not run.request.skip_staging),
            )
            run.change_set = change_set
            if change_set.is_empty:
                run.nothing_to_commit = True
                self._transition(run, WorkflowState.DONE)
                await emit(
                    CompletedEvent(
                        duration_seconds=self._clock() - started,
                        nothing_to_commit=True,
                    )
                )
                return

            self._transition(run, WorkflowState.GENERATING)
            await emit(
                ChangesDetectedEvent(
                    count=len(change_set.files),
                    summary=change_set.summary(),
                    files=[change.path for change in change_set.files],
                    insertions=change_set.insertions,
                    deletions=change_set.deletions,
                )
            )
            message, fallback = await self._generate(run, change_set)
            run.generated_message = message
            run.used_fallback = fallback

            self._check_cancelled(run)
            self._transition(run, WorkflowState.COMMITTING)
            await emit(MessageGeneratedEvent(text=message, fallback=fallback))
            commit_id = await run_with_retry(
                lambda: self._call_stage(
                    run, Stage.COMMITTING, lambda: self._git.commit(repo_path, message)
                ),
                self._commit_policy,
                sleeper=self._sleep,
                label="commit",
            )
            run.commit_id = commit_id

            self._transition(run, WorkflowState.PUSHING)
            await emit(CommittedEvent(commit_id=commit_id))
            await self._call_stage(
                run,
                Stage.PUSHING,
                lambda: self._git.push(
                    repo_path, remote=self._settings.remote, branch=self._settings.branch
                ),
            )

            self._transition(run, WorkflowState.DONE)
            await emit(PushedEvent(commit_id=commit_id))
            await emit(
                CompletedEvent(commit_id=commit_id, duration_seconds=self._clock() - started)
            )
        except StageError as exc:
            reason = exc.cause
            if exc.stage is Stage.PUSHING and run.commit_id:
                reason = (
                    f"{exc.cause}; commit {run.commit_id} was created locally and is kept, "
                    "push it manually or rerun to retry the push"
                )
            await self._fail(run, emit, exc.stage, reason)
        except RunCancelled:
            await self._fail(run, emit, Stage.CANCELLED, "run cancelled by client")

    async def _generate(self, run: WorkflowRun, change_set: ChangeSet) -> tuple[str, bool]:
        async def attempt() -> str:
            text = await self._call_stage(
                run,
                Stage.GENERATING,
                lambda: self._generator.generate(change_set, run.request.hint),
            )
            return self._validate(text, run)

        try:
            message = await run_with_retry(
                attempt, self._generation_policy, sleeper=self._sleep, label="generate"
            )
        except StageError as exc:
            if not self._settings.fallback_enabled:
                raise
            logger.warning("run %s: generation failed (%s), using fallback", run.run_id, exc.cause)
            return self._validate(render_fallback_message(change_set), run), True
        return message, False

    def _validate(self, text: str, run: WorkflowRun) -> str:
        try:
            return validate_message(
                text,
                max_length=self._settings.max_message_length,
                max_subject_length=self._settings.max_subject_length,
                prefix=run.request.message_prefix,
            )
        except GenerationError as exc:
            raise StageError(Stage.GENERATING, str(exc), error=exc) from exc

    async def _call_stage(
        self,
        run: WorkflowRun,
        stage: Stage,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Await one collaborator call bounded by the stage timeout.

        During cancellable stages the call races the run's cancel flag.
        """
        self._check_cancelled(run)
        timeout = self._settings.timeout_for(stage)
        work = asyncio.ensure_future(operation())
        waiters: set[asyncio.Future[object]] = {work}
        cancel_wait: asyncio.Future[object] | None = None
        if run.cancellable:
            cancel_wait = asyncio.ensure_future(run.cancel_requested.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()

        if work not in done:
            work.cancel()
            try:
                await work
            except asyncio.CancelledError:
                pass
            except Exception:  # noqa: BLE001
                logger.debug("run %s: %s call failed while being abandoned", run.run_id, stage)
            if cancel_wait is not None and cancel_wait in done:
                raise RunCancelled
            raise StageError(stage, f"timeout after {timeout:g}s")

        try:
            return work.result()
        except StageError:
            raise
        except Exception as exc:
            if not isinstance(exc, GitCommandError | GenerationError):
                logger.exception("run %s: unexpected error during %s", run.run_id, stage)
            raise StageError(stage, str(exc) or type(exc).__name__, error=exc) from exc

    def _check_cancelled(self, run: WorkflowRun) -> None:
        if run.cancel_requested.is_set():
            raise RunCancelled

    def _transition(self, run: WorkflowRun, state: WorkflowState) -> None:
        logger.info("run %s: %s -> %s", run.run_id, run.state, state)
        run.state = state

    async def _fail(self, run: WorkflowRun, emit: EventSink, stage: Stage, reason: str) -> None:
        logger.warning("run %s failed during %s: %s", run.run_id, stage, reason)
        run.error = StageFailure(stage=stage, reason=reason)
        self._transition(run, WorkflowState.FAILED)
        await emit(FailedEvent(stage=stage, reason=reason, commit_id=run.commit_id))
