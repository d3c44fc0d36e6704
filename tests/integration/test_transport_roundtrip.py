from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from commitflow.api.app import create_app
from commitflow.api.deps import get_session_registry
from commitflow.client.controller import ClientController
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
from commitflow.core.session import RunInProgressError, SessionRegistry
from commitflow.core.workflow_engine import WorkflowEngine
from commitflow.models.events import EventEnvelope, Stage
from commitflow.models.workflow import ChangeSet, WorkflowRequest
from tests.support.fakes import FakeGenerator, FakeGit, RecordingSleeper

ADDRESS = "commitflow.test"


def _transport(git: FakeGit | None = None, generator: FakeGenerator | None = None) -> httpx.ASGITransport:
    app = create_app()
    engine = WorkflowEngine(git or FakeGit(), generator or FakeGenerator(), sleeper=RecordingSleeper())
    registry = SessionRegistry(engine)
    app.dependency_overrides[get_session_registry] = lambda: registry
    return httpx.ASGITransport(app=app)


class RecordingPresenter:
    def __init__(self) -> None:
        self.shown: list[EventEnvelope] = []

    def show(self, envelope: EventEnvelope) -> None:
        self.shown.append(envelope)


async def _collect(session: TransportSession) -> list[EventEnvelope]:
    envelopes: list[EventEnvelope] = []
    for _ in range(100):
        item = await session.next_event(1.0)
        if isinstance(item, EventEnvelope):
            envelopes.append(item)
            if item.terminal:
                return envelopes
        elif item is StreamSignal.CLOSED:
            break
    raise AssertionError("no terminal event")


@pytest.mark.asyncio
async def test_session_streams_run_in_order(tmp_path: Path) -> None:
    session = await TransportSession.open(ADDRESS, transport=_transport())
    try:
        ack = await session.send(StartCommand(WorkflowRequest(repository_path=tmp_path)))
        envelopes = await _collect(session)
    finally:
        await session.close()

    assert all(envelope.run_id == ack.run_id for envelope in envelopes)
    assert [envelope.seq for envelope in envelopes] == list(range(6))
    assert envelopes[-1].event.kind == "completed"


@pytest.mark.asyncio
async def test_reconnect_replays_unacknowledged_events(tmp_path: Path) -> None:
    session = await TransportSession.open(ADDRESS, transport=_transport())
    try:
        await session.send(StartCommand(WorkflowRequest(repository_path=tmp_path)))
        first = await session.next_event(2.0)
        assert isinstance(first, EventEnvelope)
        await session.acknowledge(first.seq)
        second = await session.next_event(2.0)
        assert isinstance(second, EventEnvelope)

        await session.reconnect()
        replayed = await session.next_event(2.0)
    finally:
        await session.close()

    assert session.last_acknowledged == first.seq
    assert isinstance(replayed, EventEnvelope)
    assert replayed.seq == second.seq
    assert replayed.event == second.event


@pytest.mark.asyncio
async def test_start_conflict_raises_run_in_progress(tmp_path: Path) -> None:
    session = await TransportSession.open(
        ADDRESS, transport=_transport(generator=FakeGenerator(delay=1.0))
    )
    try:
        ack = await session.send(StartCommand(WorkflowRequest(repository_path=tmp_path)))
        with pytest.raises(RunInProgressError) as exc_info:
            await session.send(StartCommand(WorkflowRequest(repository_path=tmp_path)))
        assert exc_info.value.run_id == ack.run_id

        cancel = await session.send(CancelCommand(ack.run_id))
        assert cancel.accepted is True
        envelopes = await _collect(session)
    finally:
        await session.close()

    assert envelopes[-1].event.kind == "failed"
    assert envelopes[-1].event.stage == "cancelled"


@pytest.mark.asyncio
async def test_open_against_unreachable_host_fails() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SessionConnectionError, match="connection refused"):
        await TransportSession.open(ADDRESS, transport=httpx.MockTransport(refuse))


@pytest.mark.asyncio
async def test_unknown_run_reports_closed(tmp_path: Path) -> None:
    session = await TransportSession.open(ADDRESS, transport=_transport())
    try:
        await session.send(StartCommand(WorkflowRequest(repository_path=tmp_path)))
        session.run_id = "missing"
        assert await session.next_event(0.1) is StreamSignal.CLOSED
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_controller_end_to_end_exit_codes(tmp_path: Path) -> None:
    scenarios = [
        (FakeGit(), 0),
        (FakeGit(change_set=ChangeSet()), 0),
        (FakeGit(push_error=RuntimeError("remote hung up")), 13),
    ]
    for git, expected in scenarios:
        transport = _transport(git=git)

        async def connect(settings: ClientSettings) -> TransportSession:
            return await TransportSession.open(settings.address, transport=transport)

        presenter = RecordingPresenter()
        controller = ClientController(
            presenter,
            ClientSettings(address=ADDRESS, poll_interval=1.0),
            connector=connect,
        )

        code = await controller.run(WorkflowRequest(repository_path=tmp_path))

        assert code == expected
        assert presenter.shown[-1].terminal


def _scripted_host(
    *,
    start: httpx.Response | None = None,
    events: httpx.Response | None = None,
) -> httpx.MockTransport:
    def handle(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/health":
            return httpx.Response(200, json={"status": "ok"})
        if path == "/api/v1/sessions":
            return httpx.Response(201, json={"session_id": "s1"})
        if path.endswith("/runs"):
            return start or httpx.Response(201, json={"run_id": "r1"})
        if path.endswith("/events"):
            return events or httpx.Response(200, json={"events": [], "terminal": False})
        if path.endswith("/ack"):
            return httpx.Response(200, text="ok")
        return httpx.Response(204)

    return httpx.MockTransport(handle)


@pytest.mark.asyncio
async def test_start_reply_that_is_not_json_is_a_send_error(tmp_path: Path) -> None:
    host = _scripted_host(start=httpx.Response(201, text="<html>gateway</html>"))
    session = await TransportSession.open(ADDRESS, transport=host)
    try:
        with pytest.raises(SendError, match="malformed reply"):
            await session.send(StartCommand(WorkflowRequest(repository_path=tmp_path)))
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_conflict_without_json_detail_still_reports_run_in_progress(tmp_path: Path) -> None:
    host = _scripted_host(start=httpx.Response(409, text="busy"))
    session = await TransportSession.open(ADDRESS, transport=host)
    try:
        with pytest.raises(RunInProgressError) as exc_info:
            await session.send(StartCommand(WorkflowRequest(repository_path=tmp_path)))
    finally:
        await session.close()

    assert exc_info.value.run_id == "unknown"


@pytest.mark.asyncio
async def test_garbled_event_replies_drop_the_stream(tmp_path: Path) -> None:
    bodies = [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"terminal": False}),
        httpx.Response(200, json={"events": [{"run_id": "r1", "seq": "x", "event": {}}]}),
    ]
    for body in bodies:
        session = await TransportSession.open(ADDRESS, transport=_scripted_host(events=body))
        try:
            await session.send(StartCommand(WorkflowRequest(repository_path=tmp_path)))
            with pytest.raises(TransportDropped, match="malformed reply"):
                await session.next_event(0.1)
        finally:
            await session.close()


@pytest.mark.asyncio
async def test_controller_maps_garbled_stream_to_transport_failure(tmp_path: Path) -> None:
    host = _scripted_host(events=httpx.Response(200, text="<html>proxy error</html>"))

    async def connect(settings: ClientSettings) -> TransportSession:
        return await TransportSession.open(settings.address, transport=host)

    presenter = RecordingPresenter()
    controller = ClientController(
        presenter,
        ClientSettings(address=ADDRESS, poll_interval=0.1, reconnect_attempts=1),
        connector=connect,
        sleeper=RecordingSleeper(),
    )

    code = await controller.run(WorkflowRequest(repository_path=tmp_path))

    assert code == 14
    failed = presenter.shown[-1].event
    assert failed.stage is Stage.TRANSPORT
    assert "malformed reply" in failed.reason
