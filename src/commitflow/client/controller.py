"""Client controller: drive one run over a transport session and map it to an exit code."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeAlias

from commitflow.client.transport import (
    CancelCommand,
    SendError,
    SessionConnectionError,
    StartCommand,
    StreamSignal,
    TransportDropped,
    TransportSession,
)
from commitflow.config import ClientSettings
from commitflow.core.retry import Sleeper
from commitflow.core.session import RunInProgressError
from commitflow.models.events import EventEnvelope, FailedEvent, ProgressEvent, Stage
from commitflow.models.workflow import WorkflowRequest

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_CODES: dict[Stage, int] = {
    Stage.DETECTING: 10,
    Stage.GENERATING: 11,
    Stage.COMMITTING: 12,
    Stage.PUSHING: 13,
    Stage.TRANSPORT: 14,
    Stage.CANCELLED: 15,
}
MAX_CONNECT_BACKOFF_SECONDS = 8.0

Connector: TypeAlias = Callable[[ClientSettings], Awaitable[TransportSession]]
Clock: TypeAlias = Callable[[], float]


class Presenter(Protocol):
    def show(self, envelope: EventEnvelope) -> None:
        """Render one progress event."""


def exit_code_for(event: ProgressEvent) -> int:
    if isinstance(event, FailedEvent):
        return EXIT_CODES[event.stage]
    return EXIT_SUCCESS


async def open_session(settings: ClientSettings) -> TransportSession:
    return await TransportSession.open(settings.address, connect_timeout=settings.connect_timeout)


class ClientController:
    """Start a run, present every event until a terminal one, return the exit code.

    Transport problems never raise out of ``run``: they become a synthesized
    ``failed`` event with stage ``transport``.
    """

    def __init__(
        self,
        presenter: Presenter,
        settings: ClientSettings | None = None,
        *,
        connector: Connector | None = None,
        sleeper: Sleeper | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._presenter = presenter
        self._settings = settings or ClientSettings()
        self._connector = connector or open_session
        self._sleep = sleeper or asyncio.sleep
        self._clock = clock or time.monotonic
        self._session: TransportSession | None = None
        self._run_id: str | None = None
        self._last_seq = -1
        self._last_kind: str | None = None

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @property
    def last_kind(self) -> str | None:
        return self._last_kind

    async def run(self, request: WorkflowRequest) -> int:
        try:
            session = await self._connect()
        except SessionConnectionError as exc:
            return self._fail_locally(str(exc))

        self._session = session
        try:
            try:
                ack = await session.send(StartCommand(request))
            except RunInProgressError as exc:
                return self._fail_locally(f"host rejected the run: {exc}")
            except SendError as exc:
                return self._fail_locally(str(exc))
            self._run_id = ack.run_id
            logger.info("run %s started on session %s", ack.run_id, session.session_id)
            return await self._consume(session)
        finally:
            self._session = None
            await session.close()

    async def cancel(self) -> bool:
        """Ask the host to cancel the current run. Returns whether it was accepted."""
        session, run_id = self._session, self._run_id
        if session is None or run_id is None:
            return False
        try:
            ack = await session.send(CancelCommand(run_id))
        except SendError as exc:
            logger.warning("cancel request failed: %s", exc)
            return False
        if not ack.accepted:
            logger.info("cancel rejected: %s", ack.reason)
        return ack.accepted

    async def _connect(self) -> TransportSession:
        attempts = max(1, self._settings.connect_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self._connector(self._settings)
            except SessionConnectionError as exc:
                if attempt == attempts:
                    raise
                delay = min(
                    self._settings.connect_backoff * 2 ** (attempt - 1),
                    MAX_CONNECT_BACKOFF_SECONDS,
                )
                logger.warning(
                    "connect attempt %d/%d failed: %s; retrying in %.1fs",
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _consume(self, session: TransportSession) -> int:
        settings = self._settings
        last_progress = self._clock()
        reconnects = 0
        while True:
            try:
                item = await session.next_event(settings.poll_interval)
            except TransportDropped as exc:
                if reconnects >= settings.reconnect_attempts:
                    return self._fail_locally(f"connection lost: {exc}")
                reconnects += 1
                logger.warning(
                    "event stream dropped (%s); reconnect %d/%d",
                    exc,
                    reconnects,
                    settings.reconnect_attempts,
                )
                await self._sleep(settings.connect_backoff * reconnects)
                try:
                    await session.reconnect()
                except SessionConnectionError as reconnect_exc:
                    logger.warning("reconnect failed: %s", reconnect_exc)
                continue

            if item is StreamSignal.CLOSED:
                return self._fail_locally("event stream closed before the run finished")
            if item is StreamSignal.TIMEOUT:
                if self._clock() - last_progress >= settings.event_timeout:
                    return self._fail_locally(
                        f"no progress event within {settings.event_timeout:g}s"
                    )
                continue

            reconnects = 0
            if item.seq <= self._last_seq:
                logger.debug("dropping duplicate event %d", item.seq)
                continue
            last_progress = self._clock()
            self._last_seq = item.seq
            self._last_kind = item.event.kind
            self._presenter.show(item)
            try:
                await session.acknowledge(item.seq)
            except TransportDropped as exc:
                logger.warning("could not acknowledge event %d: %s", item.seq, exc)
            if item.terminal:
                return exit_code_for(item.event)

    def _fail_locally(self, reason: str) -> int:
        if self._last_kind == "committed":
            reason = f"{reason} (a local commit was already created)"
        event = FailedEvent(stage=Stage.TRANSPORT, reason=reason)
        envelope = EventEnvelope(
            run_id=self._run_id or "local",
            seq=self._last_seq + 1,
            event=event,
        )
        logger.error("transport failure: %s", reason)
        self._presenter.show(envelope)
        return exit_code_for(event)
