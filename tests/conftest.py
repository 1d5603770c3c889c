"""Shared fixtures."""

from __future__ import annotations

import sys
import threading
import time
from typing import Callable

import pytest

from maestro.session.events import EventType, WireEvent

posix_only = pytest.mark.skipif(
    sys.platform == "win32", reason="pseudo-terminals need a POSIX host"
)


class RecordingSink:
    """Event sink that keeps every event it is sent."""

    def __init__(self) -> None:
        self.events: list[WireEvent] = []
        self._lock = threading.Lock()

    def send(self, event: WireEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType) -> list[WireEvent]:
        with self._lock:
            return [e for e in self.events if e.type == event_type]

    def output(self, session_id: str) -> str:
        return "".join(
            e.data["data"]
            for e in self.of_type(EventType.PTY_OUTPUT)
            if e.data["sessionId"] == session_id
        )

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
