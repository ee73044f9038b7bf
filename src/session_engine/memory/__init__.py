from session_engine.memory.event_sink import AsyncEventSink
from session_engine.memory.events import DomainEvent, EventBus
from session_engine.memory.session_manager import SessionManager
from session_engine.memory.store import MemoryStore

__all__ = [
    "AsyncEventSink",
    "DomainEvent",
    "EventBus",
    "MemoryStore",
    "SessionManager",
]
