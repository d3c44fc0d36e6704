"""Host-side sessions: one in-flight run each, with a replayable event buffer."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from uuid import uuid4

from commitflow.core.workflow_engine import WorkflowEngine
from commitflow.db.store import RunJournal
from commitflow.models.events import EventEnvelope, ProgressEvent
from commitflow.models.workflow import WorkflowRequest, WorkflowRun

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 900.0


class UnknownSessionError(LookupError):
    """No session with this id."""


class UnknownRunError(LookupError):
    """The run does not exist or was already released."""


class RunInProgressError(RuntimeError):
    """The session already has a run that has not reached a terminal event."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"run {run_id} is still in progress")
        self.run_id = run_id


class CancelRejectedError(RuntimeError):
    """Cancellation is only accepted before committing starts."""


class RunHandle:
    """Owns a run's task and the ordered buffer of envelopes it emitted."""

    def __init__(self, run: WorkflowRun, journal: RunJournal | None = None) -> None:
        self.run = run
        self._journal = journal
        self._events: list[EventEnvelope] = []
        self._changed = asyncio.Condition()
        self.task: asyncio.Task[None] | None = None
        self.acknowledged = -1

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def terminal(self) -> bool:
        return bool(self._events) and self._events[-1].terminal

    @property
    def last_seq(self) -> int:
        return len(self._events) - 1

    async def publish(self, event: ProgressEvent) -> EventEnvelope:
        """Append one event; sequence numbers follow emission order."""
        async with self._changed:
            envelope = EventEnvelope(run_id=self.run_id, seq=len(self._events), event=event)
            self._events.append(envelope)
            self._changed.notify_all()
        logger.info("run %s event %d: %s", self.run_id, envelope.seq, event.kind)
        if self._journal is not None:
            await self._journal.record(self.run, envelope)
        return envelope

    def events_after(self, after: int) -> list[EventEnvelope]:
        return list(self._events[max(after + 1, 0) :])

    async def wait_events(self, after: int, timeout: float) -> list[EventEnvelope]:
        """Return envelopes after ``after``, waiting up to ``timeout`` for the first one."""
        async with self._changed:
            if self.last_seq <= after and timeout > 0:
                try:
                    async with asyncio.timeout(timeout):
                        await self._changed.wait_for(lambda: self.last_seq > after)
                except TimeoutError:
                    pass
            return self.events_after(after)


class Session:
    """A client's connection to the host. Holds at most one active run."""

    def __init__(self, engine: WorkflowEngine, journal: RunJournal | None = None) -> None:
        self.session_id = uuid4().hex
        self._engine = engine
        self._journal = journal
        self._active: RunHandle | None = None

    @property
    def active(self) -> RunHandle | None:
        return self._active

    def start(self, request: WorkflowRequest) -> RunHandle:
        """Create a run and schedule it on the running event loop."""
        if self._active is not None and not self._active.terminal:
            raise RunInProgressError(self._active.run_id)
        if self._active is not None:
            logger.info("session %s: replacing unacknowledged run %s", self.session_id, self._active.run_id)

        handle = RunHandle(WorkflowRun(request=request), self._journal)
        handle.task = asyncio.create_task(
            self._engine.execute(handle.run, handle.publish),
            name=f"commitflow-run-{handle.run_id}",
        )
        handle.task.add_done_callback(_log_task_failure)
        self._active = handle
        logger.info(
            "session %s: started run %s for %s",
            self.session_id,
            handle.run_id,
            request.repository_path,
        )
        return handle

    def get_run(self, run_id: str) -> RunHandle:
        if self._active is None or self._active.run_id != run_id:
            raise UnknownRunError(run_id)
        return self._active

    def cancel(self, run_id: str) -> None:
        handle = self.get_run(run_id)
        run = handle.run
        if not run.cancellable:
            msg = f"cannot cancel run {run_id} in state {run.state.value}"
            raise CancelRejectedError(msg)
        logger.info("session %s: cancel requested for run %s", self.session_id, run_id)
        run.cancel_requested.set()

    def acknowledge(self, run_id: str, seq: int) -> bool:
        """Record the client's cursor. Returns True once the run is released."""
        handle = self.get_run(run_id)
        handle.acknowledged = max(handle.acknowledged, min(seq, handle.last_seq))
        if handle.terminal and handle.acknowledged >= handle.last_seq:
            self._active = None
            logger.info("session %s: released run %s", self.session_id, run_id)
            return True
        return False


class SessionRegistry:
    """All open sessions of the host process.

    Sessions not touched for ``idle_timeout`` seconds are closed the next time
    a session is opened. ``None`` keeps sessions until they are closed.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        journal: RunJournal | None = None,
        *,
        idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._engine = engine
        self._journal = journal
        self._idle_timeout = idle_timeout
        self._clock = clock or time.monotonic
        self._sessions: dict[str, Session] = {}
        self._last_seen: dict[str, float] = {}
        self._orphans: set[asyncio.Task[None]] = set()

    @property
    def journal(self) -> RunJournal | None:
        return self._journal

    def open(self) -> Session:
        self.reap_idle()
        session = Session(self._engine, self._journal)
        self._sessions[session.session_id] = session
        self._last_seen[session.session_id] = self._clock()
        logger.info("opened session %s", session.session_id)
        return session

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        self._last_seen[session_id] = self._clock()
        return session

    def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        if session is None:
            raise UnknownSessionError(session_id)
        active = session.active
        if active is not None and active.task is not None and not active.task.done():
            # An unfinished run keeps going; a started commit is never aborted.
            self._orphans.add(active.task)
            active.task.add_done_callback(self._orphans.discard)
        logger.info("closed session %s", session_id)

    def reap_idle(self) -> list[str]:
        """Close sessions idle longer than the timeout and return their ids."""
        if self._idle_timeout is None:
            return []
        cutoff = self._clock() - self._idle_timeout
        stale = [session_id for session_id, seen in self._last_seen.items() if seen < cutoff]
        for session_id in stale:
            logger.info("session %s idle for over %.0fs, closing", session_id, self._idle_timeout)
            self.close(session_id)
        return stale

    async def shutdown(self) -> None:
        tasks = list(self._orphans)
        for session in self._sessions.values():
            if session.active is not None and session.active.task is not None:
                tasks.append(session.active.task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sessions.clear()
        self._last_seen.clear()


def _log_task_failure(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("run task %s crashed", task.get_name(), exc_info=exc)
