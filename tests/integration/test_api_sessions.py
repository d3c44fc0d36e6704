from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from commitflow.api.app import create_app
from commitflow.api.deps import get_session_registry
from commitflow.core.git_manager import GitCommandError
from commitflow.core.session import SessionRegistry
from commitflow.core.workflow_engine import WorkflowEngine
from commitflow.db.store import RunJournal
from tests.support.fakes import COMMIT_ID, FakeGenerator, FakeGit, RecordingSleeper


def _setup_app(
    tmp_path: Path,
    git: FakeGit | None = None,
    generator: FakeGenerator | None = None,
) -> tuple[TestClient, SessionRegistry]:
    app = create_app()
    engine = WorkflowEngine(
        git or FakeGit(), generator or FakeGenerator(), sleeper=RecordingSleeper()
    )
    registry = SessionRegistry(engine, RunJournal(tmp_path / "commitflow.db"))
    app.dependency_overrides[get_session_registry] = lambda: registry
    return TestClient(app), registry


def _drain(client: TestClient, session_id: str, run_id: str) -> list[dict]:
    events: list[dict] = []
    cursor = -1
    for _ in range(50):
        response = client.get(
            f"/api/v1/sessions/{session_id}/runs/{run_id}/events",
            params={"after": cursor, "wait": 2},
        )
        assert response.status_code == 200
        body = response.json()
        events.extend(body["events"])
        if events:
            cursor = events[-1]["seq"]
        if body["terminal"]:
            return events
    raise AssertionError("run never reached a terminal event")


def test_health(tmp_path: Path) -> None:
    client, _registry = _setup_app(tmp_path)
    with client:
        response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_full_run_over_http(tmp_path: Path) -> None:
    client, _registry = _setup_app(tmp_path)
    with client:
        session_id = client.post("/api/v1/sessions").json()["session_id"]
        start = client.post(
            f"/api/v1/sessions/{session_id}/runs",
            json={"repository_path": str(tmp_path), "hint": "docs"},
        )
        assert start.status_code == 201
        run_id = start.json()["run_id"]

        events = _drain(client, session_id, run_id)
        assert [event["event"]["kind"] for event in events] == [
            "started",
            "changes_detected",
            "message_generated",
            "committed",
            "pushed",
            "completed",
        ]
        assert [event["seq"] for event in events] == list(range(6))
        assert events[-1]["event"]["commit_id"] == COMMIT_ID

        replay = client.get(
            f"/api/v1/sessions/{session_id}/runs/{run_id}/events", params={"after": 2}
        ).json()
        assert [event["seq"] for event in replay["events"]] == [3, 4, 5]

        ack = client.post(
            f"/api/v1/sessions/{session_id}/runs/{run_id}/ack", json={"seq": 5}
        )
        assert ack.json() == {"released": True}

        gone = client.get(f"/api/v1/sessions/{session_id}/runs/{run_id}/events")
        assert gone.status_code == 404

        history = client.get("/api/v1/runs").json()["items"]
        assert [item["run_id"] for item in history] == [run_id]
        assert history[0]["state"] == "done"

        journaled = client.get(f"/api/v1/runs/{run_id}/events").json()
        assert journaled["terminal"] is True
        assert len(journaled["events"]) == 6

        assert client.delete(f"/api/v1/sessions/{session_id}").status_code == 204


def test_failed_push_is_reported_with_commit(tmp_path: Path) -> None:
    git = FakeGit(push_error=GitCommandError("git push", "rejected", 1))
    client, _registry = _setup_app(tmp_path, git)
    with client:
        session_id = client.post("/api/v1/sessions").json()["session_id"]
        run_id = client.post(
            f"/api/v1/sessions/{session_id}/runs",
            json={"repository_path": str(tmp_path)},
        ).json()["run_id"]

        failed = _drain(client, session_id, run_id)[-1]["event"]

    assert failed["kind"] == "failed"
    assert failed["stage"] == "pushing"
    assert failed["commit_id"] == COMMIT_ID


def test_second_run_conflicts_while_first_is_active(tmp_path: Path) -> None:
    client, _registry = _setup_app(tmp_path, generator=FakeGenerator(delay=1.0))
    with client:
        session_id = client.post("/api/v1/sessions").json()["session_id"]
        url = f"/api/v1/sessions/{session_id}/runs"
        first = client.post(url, json={"repository_path": str(tmp_path)}).json()["run_id"]

        conflict = client.post(url, json={"repository_path": str(tmp_path)})
        assert conflict.status_code == 409
        assert conflict.json()["detail"] == {"error": "run_in_progress", "run_id": first}

        events = _drain(client, session_id, first)
        client.post(f"{url}/{first}/ack", json={"seq": events[-1]["seq"]})
        again = client.post(url, json={"repository_path": str(tmp_path)})
        assert again.status_code == 201


def test_cancel_while_generating(tmp_path: Path) -> None:
    git = FakeGit()
    client, _registry = _setup_app(tmp_path, git, FakeGenerator(delay=5.0))
    with client:
        session_id = client.post("/api/v1/sessions").json()["session_id"]
        run_id = client.post(
            f"/api/v1/sessions/{session_id}/runs",
            json={"repository_path": str(tmp_path)},
        ).json()["run_id"]
        client.get(
            f"/api/v1/sessions/{session_id}/runs/{run_id}/events",
            params={"after": 0, "wait": 2},
        )

        response = client.post(f"/api/v1/sessions/{session_id}/runs/{run_id}/cancel")
        assert response.status_code == 202
        assert response.json()["accepted"] is True

        failed = _drain(client, session_id, run_id)[-1]["event"]

    assert failed["stage"] == "cancelled"
    assert git.commit_messages == []


def test_cancel_after_commit_is_rejected(tmp_path: Path) -> None:
    client, _registry = _setup_app(tmp_path)
    with client:
        session_id = client.post("/api/v1/sessions").json()["session_id"]
        run_id = client.post(
            f"/api/v1/sessions/{session_id}/runs",
            json={"repository_path": str(tmp_path)},
        ).json()["run_id"]
        _drain(client, session_id, run_id)

        response = client.post(f"/api/v1/sessions/{session_id}/runs/{run_id}/cancel")

    assert response.status_code == 409
    assert "cannot cancel" in response.json()["detail"]


def test_unknown_session_and_run_are_404(tmp_path: Path) -> None:
    client, _registry = _setup_app(tmp_path)
    with client:
        assert client.post("/api/v1/sessions/nope/runs", json={"repository_path": "/x"}).status_code == 404
        session_id = client.post("/api/v1/sessions").json()["session_id"]
        assert client.get(f"/api/v1/sessions/{session_id}/runs/nope/events").status_code == 404
        assert client.post(f"/api/v1/sessions/{session_id}/runs/nope/cancel").status_code == 404
        assert client.get("/api/v1/runs/nope/events").status_code == 404
