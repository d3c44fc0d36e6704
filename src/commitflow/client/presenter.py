"""Terminal rendering of progress events."""

from __future__ import annotations

import os
import sys
from typing import TextIO

from commitflow.models.events import (
    ChangesDetectedEvent,
    CommittedEvent,
    CompletedEvent,
    EventEnvelope,
    FailedEvent,
    MessageGeneratedEvent,
    PushedEvent,
    Stage,
    StartedEvent,
)

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"

CHECK = "✓"
CROSS = "✗"


def supports_color(stream: TextIO) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(stream, "isatty") and stream.isatty()


def short_id(commit_id: str | None) -> str:
    return (commit_id or "")[:12]


class TerminalPresenter:
    """Print one line per event; failures go to stderr."""

    def __init__(
        self,
        out: TextIO | None = None,
        err: TextIO | None = None,
        *,
        color: bool | None = None,
        show_message: bool = True,
    ) -> None:
        self._out = out or sys.stdout
        self._err = err or sys.stderr
        self._color = supports_color(self._out) if color is None else color
        self._show_message = show_message

    def _paint(self, text: str, *codes: str) -> str:
        if not self._color:
            return text
        return f"{''.join(codes)}{text}{RESET}"

    def _line(self, text: str) -> None:
        print(text, file=self._out, flush=True)

    def show(self, envelope: EventEnvelope) -> None:
        event = envelope.event
        match event:
            case StartedEvent():
                self._line(self._paint(f"Starting commit run in {event.repository_path}", BOLD))
            case ChangesDetectedEvent():
                self._line(f"{self._paint(CHECK, GREEN)} Found {event.count} changed file(s): {event.summary}")
                if event.insertions or event.deletions:
                    stats = f"+{event.insertions} insertions, -{event.deletions} deletions"
                    self._line(self._paint(f"    {stats}", DIM))
            case MessageGeneratedEvent():
                label = "fallback message" if event.fallback else "message"
                self._line(f"{self._paint(CHECK, GREEN)} Generated {label}")
                if self._show_message:
                    for line in event.text.splitlines():
                        self._line(self._paint(f"    {line}", DIM))
            case CommittedEvent():
                self._line(f"{self._paint(CHECK, GREEN)} Committed {short_id(event.commit_id)}")
            case PushedEvent():
                self._line(f"{self._paint(CHECK, GREEN)} Pushed {short_id(event.commit_id)}")
            case CompletedEvent():
                self._show_completed(event)
            case FailedEvent():
                self._show_failed(event)

    def _show_completed(self, event: CompletedEvent) -> None:
        if event.nothing_to_commit:
            self._line(self._paint("Nothing to commit, working tree clean", YELLOW))
            return
        self._line(
            self._paint(
                f"{CHECK} Done: {short_id(event.commit_id)} in {event.duration_seconds:.1f}s",
                GREEN,
                BOLD,
            )
        )

    def _show_failed(self, event: FailedEvent) -> None:
        print(
            self._paint(f"{CROSS} {event.stage.value} failed: {event.reason}", RED, BOLD),
            file=self._err,
            flush=True,
        )
        if event.commit_id:
            print(
                self._paint(
                    f"  Local commit {event.commit_id} was kept; push it with `git push`.",
                    YELLOW,
                ),
                file=self._err,
                flush=True,
            )
        elif event.stage is Stage.CANCELLED:
            print(self._paint("  No commit was created.", DIM), file=self._err, flush=True)
