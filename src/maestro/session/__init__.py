"""Sessions — records, the session store, events and persistence."""

from maestro.session.events import EventSink, EventType, Wire, WireEvent
from maestro.session.manager import SessionStore
from maestro.session.persistence import JsonSessionStore, PersistedSession, PersistenceGateway
from maestro.session.types import Session, SessionStatus, SessionUpdate, TerminalMode

__all__ = [
    "EventSink",
    "EventType",
    "JsonSessionStore",
    "PersistedSession",
    "PersistenceGateway",
    "Session",
    "SessionStatus",
    "SessionStore",
    "SessionUpdate",
    "TerminalMode",
    "Wire",
    "WireEvent",
]
