from __future__ import annotations

from commitflow.models.events import (
    ENVELOPE_LIST_ADAPTER,
    CompletedEvent,
    EventEnvelope,
    FailedEvent,
    Stage,
    StartedEvent,
    follows_canonical_order,
    is_terminal,
)
from commitflow.models.workflow import ChangeKind, ChangeSet, FileChange, WorkflowRequest, WorkflowRun


def test_envelope_json_round_trip_keeps_event_type() -> None:
    envelope = EventEnvelope(
        run_id="r1",
        seq=4,
        event=FailedEvent(stage=Stage.PUSHING, reason="rejected", commit_id="abc"),
    )

    restored = ENVELOPE_LIST_ADAPTER.validate_json(f"[{envelope.model_dump_json()}]")[0]

    assert isinstance(restored.event, FailedEvent)
    assert restored.event.stage is Stage.PUSHING
    assert restored == envelope
    assert restored.terminal is True


def test_terminal_kinds() -> None:
    assert is_terminal(CompletedEvent())
    assert is_terminal(FailedEvent(stage=Stage.TRANSPORT, reason="lost"))
    assert not is_terminal(StartedEvent(repository_path="/repo"))


def test_canonical_order_checks() -> None:
    assert follows_canonical_order(["started", "changes_detected", "message_generated"])
    assert follows_canonical_order(["started", "completed"])
    assert follows_canonical_order(["started", "changes_detected", "failed"])
    assert not follows_canonical_order(["failed"])
    assert not follows_canonical_order(["started", "failed", "completed"])
    assert not follows_canonical_order(["started", "committed"])
    assert not follows_canonical_order(["changes_detected", "started"])


def test_change_set_summary_keeps_first_seen_order() -> None:
    change_set = ChangeSet(
        files=[
            FileChange(path="a", kind=ChangeKind.DELETED),
            FileChange(path="b", kind=ChangeKind.ADDED),
            FileChange(path="c", kind=ChangeKind.DELETED),
        ]
    )

    assert change_set.summary() == "2 deleted, 1 added"
    assert not change_set.is_empty
    assert ChangeSet().is_empty


def test_new_run_is_cancellable_and_not_terminal(tmp_path) -> None:
    run = WorkflowRun(request=WorkflowRequest(repository_path=tmp_path))

    assert run.cancellable is True
    assert run.terminal is False
    assert len(run.run_id) == 32
