"""Session event wire — decouples session/pty state from observers.

Events flow from the session store and pty readers to whatever UI bridge
is subscribed at publish time. Delivery is at-most-once: nothing is
buffered for subscribers that join later.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from maestro.session.types import Session, SessionStatus

logger = logging.getLogger(__name__)


class EventType(enum.StrEnum):
    SESSION_CREATED = "session-created"
    SESSION_UPDATED = "session-updated"
    SESSION_STATUS_CHANGED = "session-status-changed"
    SESSION_STOPPED = "session-stopped"
    SESSION_SERVER_DETECTED = "session-server-detected"
    SESSION_DELETED = "session-deleted"
    PTY_OUTPUT = "pty-output"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def channel(self) -> str:
        """Delivery channel; raw pty output is scoped per session."""
        if self.type == EventType.PTY_OUTPUT:
            return f"{self.type.value}-{self.data.get('sessionId', '')}"
        return self.type.value


@runtime_checkable
class EventSink(Protocol):
    """Anything that can publish wire events."""

    def send(self, event: WireEvent) -> None: ...


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def session_created(session: Session) -> WireEvent:
    return WireEvent(type=EventType.SESSION_CREATED, data={"session": session})


def session_updated(session: Session, changed_fields: list[str]) -> WireEvent:
    return WireEvent(
        type=EventType.SESSION_UPDATED,
        data={"session": session, "changedFields": list(changed_fields)},
    )


def session_status_changed(
    session_id: str, old_status: SessionStatus, new_status: SessionStatus
) -> WireEvent:
    return WireEvent(
        type=EventType.SESSION_STATUS_CHANGED,
        data={
            "sessionId": session_id,
            "oldStatus": old_status,
            "newStatus": new_status,
        },
    )


def session_stopped(session_id: str, exit_code: int | None, reason: str) -> WireEvent:
    return WireEvent(
        type=EventType.SESSION_STOPPED,
        data={"sessionId": session_id, "exitCode": exit_code, "reason": reason},
    )


def session_server_detected(session_id: str, url: str, port: int) -> WireEvent:
    return WireEvent(
        type=EventType.SESSION_SERVER_DETECTED,
        data={"sessionId": session_id, "url": url, "port": port},
    )


def session_deleted(session_id: str) -> WireEvent:
    return WireEvent(type=EventType.SESSION_DELETED, data={"sessionId": session_id})


def pty_output(session_id: str, data: str) -> WireEvent:
    return WireEvent(
        type=EventType.PTY_OUTPUT, data={"sessionId": session_id, "data": data}
    )


def publish(sink: EventSink | None, event: WireEvent) -> None:
    """Send an event, logging (never raising) if the sink fails."""
    if sink is None:
        return
    try:
        sink.send(event)
    except Exception:
        logger.exception("Failed to publish %s event", event.type.value)


# ---------------------------------------------------------------------------
# Wire
# ---------------------------------------------------------------------------


@dataclass
class _Subscription:
    queue: asyncio.Queue[WireEvent | None]
    loop: asyncio.AbstractEventLoop
    channel: str | None = None


class Wire:
    """Message bus: session store and pty readers -> UI subscribers.

    Multi-producer, multi-consumer broadcast. ``send()`` may be called
    from pty reader threads; events are handed to each subscriber's
    event loop with ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._subscribers: list[_Subscription] = []
        self._lock = threading.Lock()
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all matching subscribers.

        Silently drops events after ``close()`` has been called.
        """
        with self._lock:
            if self._closed:
                return
            subscribers = list(self._subscribers)
        for sub in subscribers:
            if sub.channel is not None and sub.channel != event.channel:
                continue
            self._deliver(sub, event)

    def subscribe(self, channel: str | None = None) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events, optionally only those on ``channel``.

        Must be called from the asyncio thread that will read the queue.
        """
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        sub = _Subscription(queue=q, loop=asyncio.get_running_loop(), channel=channel)
        with self._lock:
            self._subscribers.append(sub)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        with self._lock:
            self._subscribers = [s for s in self._subscribers if s.queue is not q]

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers)
        for sub in subscribers:
            self._deliver(sub, None)

    @property
    def closed(self) -> bool:
        return self._closed

    @staticmethod
    def _deliver(sub: _Subscription, event: WireEvent | None) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is sub.loop:
            sub.queue.put_nowait(event)
            return
        try:
            sub.loop.call_soon_threadsafe(sub.queue.put_nowait, event)
        except RuntimeError:
            # Subscriber's loop has been closed.
            logger.debug("Dropping event for closed subscriber loop")
