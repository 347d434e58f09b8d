"""
Core runtime module.

Exports:
- EventBus, Event, ChatEvent, SaveEvent: Event system
- Record: Base for persisted pydantic models
"""

from chatcore.core.events import EventBus, Event, ChatEvent, SaveEvent
from chatcore.core.record import Record

__all__ = [
    # Events
    "EventBus",
    "Event",
    "ChatEvent",
    "SaveEvent",
    # Data
    "Record",
]
